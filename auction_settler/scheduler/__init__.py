"""Settlement scheduler: event reconciliation, settlement worker and supervisor."""

from .event_reconciler import EVENT_TYPES, EventReconciler, order_events
from .settlement_worker import SettlementWorker
from .supervisor import SchedulerSupervisor, SupervisorState, build_scheduler

__all__ = [
    'EVENT_TYPES',
    'EventReconciler',
    'order_events',
    'SettlementWorker',
    'SchedulerSupervisor',
    'SupervisorState',
    'build_scheduler',
]
