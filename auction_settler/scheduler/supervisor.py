"""
SchedulerSupervisor - owns the periodic settlement, event-poll and heartbeat tasks.

Lifecycle is stopped -> running -> stopped. Each loop runs its first step
immediately and then once per interval, waiting on a shared stop event so
that stop() wakes every loop at once. An in-flight step is allowed to finish
(up to the drain timeout) before the remaining tasks are cancelled.
"""

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import SettlerConfig
from ..exceptions import StoreError
from ..infrastructure.auction_data import LogLevel, QueueStatus, format_timestamp, utc_now
from ..infrastructure.settlement_store import SettlementStore
from .event_reconciler import EventReconciler
from .settlement_worker import SettlementWorker

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    """Lifecycle state of a scheduler supervisor."""
    STOPPED = "stopped"
    RUNNING = "running"


class SchedulerSupervisor:
    """
    Runs the settlement scheduler.

    Each instance owns its own tasks and stop event, so several supervisors
    can coexist (e.g. in tests) without sharing state.
    """

    def __init__(
        self,
        store: SettlementStore,
        reconciler: EventReconciler,
        worker: SettlementWorker,
        heartbeat_interval: float = 15.0,
        drain_timeout: float = 30.0
    ):
        self.store = store
        self.reconciler = reconciler
        self.worker = worker
        self.heartbeat_interval = heartbeat_interval
        self.drain_timeout = drain_timeout

        self.state = SupervisorState.STOPPED
        self.started_at = None
        self.step_counts: Dict[str, int] = {"settlement": 0, "event_poll": 0, "heartbeat": 0}

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped: Optional[asyncio.Event] = None
        self._signal_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.state == SupervisorState.RUNNING

    def _stop_requested(self) -> bool:
        return self._stop_event is None or self._stop_event.is_set()

    async def start(self) -> bool:
        """
        Start the periodic tasks.

        Returns:
            True if the scheduler is running, False if it is disabled
        """
        if self.running:
            logger.info("Settlement scheduler already running")
            return True

        config = self.store.get_config()
        if not config.settlement_enabled:
            self.store.log(LogLevel.WARN, "Settlement scheduler is disabled, not starting")
            return False

        self.worker.requeue_interrupted()

        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self.state = SupervisorState.RUNNING
        self.started_at = utc_now()

        settlement_interval = config.settlement_interval_ms / 1000
        poll_interval = config.event_poll_interval_ms / 1000

        self._tasks = [
            asyncio.create_task(
                self._run_periodic("settlement", settlement_interval, self._settlement_step),
                name="settlement-loop"
            ),
            asyncio.create_task(
                self._run_periodic("event_poll", poll_interval, self.reconciler.poll),
                name="event-poll-loop"
            ),
            asyncio.create_task(
                self._run_periodic("heartbeat", self.heartbeat_interval, self._heartbeat_step, immediate=False),
                name="heartbeat-loop"
            ),
        ]

        self.store.log(LogLevel.INFO, "Settlement scheduler started", {
            "settlementIntervalMs": config.settlement_interval_ms,
            "eventPollIntervalMs": config.event_poll_interval_ms,
            "maxSettlementAttempts": config.max_settlement_attempts,
        })
        return True

    async def stop(self):
        """Stop the periodic tasks. Safe to call more than once."""
        if self.state == SupervisorState.STOPPED:
            return
        if self._stop_event.is_set():
            # Another caller is already draining
            await self._stopped.wait()
            return

        logger.info("Stopping settlement scheduler...")
        self._stop_event.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.drain_timeout)
            if pending:
                logger.warning(f"Cancelling {len(pending)} tasks still running after {self.drain_timeout}s")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        self.state = SupervisorState.STOPPED
        try:
            self.store.log(LogLevel.INFO, "Settlement scheduler stopped")
        except StoreError as e:
            logger.error(f"Could not record scheduler stop: {e}")
        finally:
            self._signal_task = None
            self._stopped.set()

    async def run_forever(self):
        """Start, then block until stopped by SIGINT/SIGTERM or stop()."""
        if not await self.start():
            return

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support
                logger.debug(f"Signal handler for {sig.name} not available")

        try:
            await self._stopped.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals):
        logger.info(f"Received {sig.name}, shutting down")
        if self._signal_task is None:
            self._signal_task = asyncio.create_task(self.stop())

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        step: Callable[[], Awaitable[Any]],
        immediate: bool = True
    ):
        if immediate and not self._stop_requested():
            await self._run_step(name, step)

        while not self._stop_requested():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self._run_step(name, step)

    async def _run_step(self, name: str, step: Callable[[], Awaitable[Any]]):
        try:
            await step()
        except Exception as e:
            logger.error(f"Error in {name} step: {e}", exc_info=True)
        finally:
            self.step_counts[name] += 1

    async def _settlement_step(self):
        return await self.worker.run_cycle(should_continue=lambda: not self._stop_requested())

    async def _heartbeat_step(self):
        queue = self.store.get_queue()
        pending = sum(1 for item in queue if item.status == QueueStatus.PENDING)
        logger.info(
            f"Heartbeat - queue: {len(queue)} items ({pending} pending), "
            f"last processed block: {self.reconciler.last_processed_block}"
        )

    def get_status(self) -> Dict[str, Any]:
        """Get current supervisor status."""
        return {
            "state": self.state.value,
            "started_at": format_timestamp(self.started_at) if self.started_at else None,
            "steps": dict(self.step_counts),
            "tasks": [task.get_name() for task in self._tasks if not task.done()],
        }


def build_scheduler(
    settings: SettlerConfig,
    ledger,
    store: Optional[SettlementStore] = None
) -> SchedulerSupervisor:
    """
    Wire a supervisor from settings and an initialized ledger client.

    Connection settings from the environment are written over the persisted
    copy; intervals, attempt budget and the enabled flag stay as persisted.
    """
    if store is None:
        store = SettlementStore(settings.data_dir, settings.log_retention, settings.scheduler_defaults())
        store.init()

    store.update_config(
        rpc_url=settings.blockchain.rpc_url,
        contract_address=settings.blockchain.contract_address,
        coordinator_address=settings.blockchain.coordinator_address or getattr(ledger, "address", None),
    )

    reconciler = EventReconciler(
        store,
        ledger,
        max_block_range=settings.max_block_range,
        error_delay=settings.poll_error_delay,
    )
    worker = SettlementWorker(
        store,
        ledger,
        batch_size=settings.batch_size,
        verify_before_settle=settings.verify_before_settle,
    )
    return SchedulerSupervisor(
        store,
        reconciler,
        worker,
        heartbeat_interval=settings.heartbeat_interval_ms / 1000,
        drain_timeout=settings.shutdown_timeout,
    )
