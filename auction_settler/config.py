"""Configuration management for the auction settlement scheduler."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

# .env lives at the project root, next to setup.py
PROJECT_DIR = Path(__file__).parent.parent
ENV_FILE_PATH = PROJECT_DIR / ".env"


class BlockchainConfig(BaseSettings):
    """Ledger connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BLOCKCHAIN_",
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    rpc_url: str = Field(default="http://localhost:8545", description="RPC endpoint URL")
    chain_id: int = Field(default=31337, description="Chain ID (31337 for local Anvil, 84532 for Base Sepolia)")
    private_key: Optional[str] = Field(default=None, description="Coordinator signing key")
    gas_limit: int = Field(default=500000, description="Gas limit for settlement transactions")
    gas_price: Optional[int] = Field(default=None, description="Fixed gas price in wei, overrides the node estimate")
    contract_address: Optional[str] = Field(default=None, description="TicketAuction contract address")
    coordinator_address: Optional[str] = Field(default=None, description="Coordinator account (defaults to signer)")
    abi_path: Optional[str] = Field(default=None, description="Optional path to a TicketAuction ABI JSON file")
    request_timeout: float = Field(default=30.0, description="RPC request timeout in seconds")
    receipt_timeout: float = Field(default=120.0, description="Seconds to wait for a transaction receipt")


class SettlerConfig(BaseSettings):
    """Main configuration class for the settlement scheduler."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Ledger connection
    blockchain: BlockchainConfig = Field(default_factory=BlockchainConfig)

    # Durable store
    data_dir: str = Field(default="./settlement-data", description="Directory holding the JSON collections")
    log_retention: int = Field(default=1000, description="Maximum number of persisted log entries")
    cleanup_log_keep: int = Field(default=500, description="Log entries kept by the cleanup command")

    # Scheduling (seed values for the persisted scheduler config)
    settlement_interval_ms: int = Field(default=60000, description="Settlement loop interval")
    event_poll_interval_ms: int = Field(default=30000, description="Event polling interval")
    heartbeat_interval_ms: int = Field(default=15000, description="Heartbeat log interval")
    max_settlement_attempts: int = Field(default=5, description="Attempts before an item is marked failed")
    settlement_enabled: bool = Field(default=True, description="Master switch for the scheduler")

    # Worker / reconciler tuning
    batch_size: int = Field(default=5, description="Queue items settled per cycle")
    verify_before_settle: bool = Field(default=True, description="Skip auctions the ledger already reports settled")
    poll_error_delay: float = Field(default=5.0, description="Seconds to pause after a failed poll")
    max_block_range: int = Field(default=2000, description="Largest block range queried at once")
    shutdown_timeout: float = Field(default=30.0, description="Seconds to let in-flight steps finish on stop")

    # Logging
    debug: bool = Field(default=False, description="Log at DEBUG level unless --log-level is given")

    @classmethod
    def from_env(cls) -> "SettlerConfig":
        """Create configuration from environment variables."""
        return cls()

    def check(self, require_signer: bool = True) -> None:
        """
        Validate that required configuration is present.

        Args:
            require_signer: Whether a signing key is mandatory (scheduler and manual settle)

        Raises:
            ConfigurationError: Listing every problem found
        """
        errors: List[str] = []

        if require_signer and not self.blockchain.private_key:
            errors.append("BLOCKCHAIN_PRIVATE_KEY is required for settlement transactions")

        if require_signer and not self.blockchain.contract_address:
            errors.append("BLOCKCHAIN_CONTRACT_ADDRESS is required")

        if self.max_settlement_attempts < 1:
            errors.append("MAX_SETTLEMENT_ATTEMPTS must be at least 1")

        if self.batch_size < 1:
            errors.append("BATCH_SIZE must be at least 1")

        if self.max_block_range < 1:
            errors.append("MAX_BLOCK_RANGE must be at least 1")

        if min(self.settlement_interval_ms, self.event_poll_interval_ms, self.heartbeat_interval_ms) <= 0:
            errors.append("Loop intervals must be positive")

        if errors:
            raise ConfigurationError("Invalid configuration", {"errors": "; ".join(errors)})

    def scheduler_defaults(self) -> Dict[str, Any]:
        """Seed values written to the persisted scheduler config on first run."""
        return {
            "last_processed_block": 0,
            "settlement_interval_ms": self.settlement_interval_ms,
            "event_poll_interval_ms": self.event_poll_interval_ms,
            "max_settlement_attempts": self.max_settlement_attempts,
            "coordinator_address": self.blockchain.coordinator_address,
            "contract_address": self.blockchain.contract_address,
            "rpc_url": self.blockchain.rpc_url,
            "settlement_enabled": self.settlement_enabled,
        }

    def display(self):
        """Display current configuration (hiding sensitive data)."""
        print("Configuration:")
        print(f"  RPC URL: {self.blockchain.rpc_url}")
        print(f"  Chain ID: {self.blockchain.chain_id}")
        print(f"  Private Key: {'✓ Set' if self.blockchain.private_key else '✗ Not set'}")
        print(f"  Gas Limit: {self.blockchain.gas_limit}")
        print(f"  Contract: {self.blockchain.contract_address or '✗ Not set'}")
        print(f"  Coordinator: {self.blockchain.coordinator_address or '(signer)'}")
        print(f"  Data Dir: {self.data_dir}")
        print(f"  Settlement Interval: {self.settlement_interval_ms / 1000}s")
        print(f"  Event Poll Interval: {self.event_poll_interval_ms / 1000}s")
        print(f"  Max Attempts: {self.max_settlement_attempts}")
        print(f"  Batch Size: {self.batch_size}")
        print(f"  Debug: {self.debug}")


def load_config() -> SettlerConfig:
    """Load settings from the environment and the optional .env file."""
    try:
        return SettlerConfig.from_env()
    except ValidationError as e:
        raise ConfigurationError("Invalid configuration", {"errors": str(e)}) from e
