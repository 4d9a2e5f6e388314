"""Configuration management for the bridge relayer.

This module provides type-safe configuration dataclasses with validation for
the relayer. Configuration is loaded from environment variables with sensible
defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

GWEI = 10**9


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one chain the relayer reads from or writes to.

    Attributes:
        name: Short chain name used in environment variables and logs
        rpc_url: HTTP(S) RPC endpoint
        bridge_address: Checksummed address of the bridge contract
        confirmation_depth: Blocks required on top of a lock event's block
        chain_id: Chain ID (fetched from RPC when not configured)
        start_block: First block to scan when no checkpoint exists yet
        max_gas_price_gwei: Gas price ceiling for unlocks sent to this chain
    """

    name: str
    rpc_url: str
    bridge_address: str
    confirmation_depth: int = 12
    chain_id: int | None = None
    start_block: int | None = None
    max_gas_price_gwei: float | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.name:
            raise ValueError("Chain name is required")

        prefix = self.name.upper()
        if not self.rpc_url:
            raise ValueError(f"RPC URL is required for {self.name} ({prefix}_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http or https"
            )

        if not self.bridge_address:
            raise ValueError(
                f"Bridge contract address is required for {self.name} ({prefix}_BRIDGE_ADDRESS)"
            )

        if not Web3.is_address(self.bridge_address):
            raise ValueError(f"Invalid bridge address for {self.name}: {self.bridge_address}")

        checksummed = Web3.to_checksum_address(self.bridge_address)
        if checksummed != self.bridge_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'bridge_address', checksummed)

        if self.confirmation_depth < 0:
            raise ValueError(
                f"Confirmation depth must be non-negative, got {self.confirmation_depth} for {self.name}"
            )

        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")

        if self.max_gas_price_gwei is not None and self.max_gas_price_gwei <= 0:
            raise ValueError(
                f"Gas price ceiling must be positive, got {self.max_gas_price_gwei} gwei for {self.name}"
            )

    @property
    def max_gas_price_wei(self) -> int | None:
        if self.max_gas_price_gwei is None:
            return None
        return int(self.max_gas_price_gwei * GWEI)

    @classmethod
    def from_env(cls, name: str) -> "ChainConfig":
        prefix = name.upper()
        return cls(
            name=name,
            rpc_url=os.environ.get(f"{prefix}_RPC_URL", ""),
            bridge_address=os.environ.get(f"{prefix}_BRIDGE_ADDRESS", ""),
            confirmation_depth=_env_int(f"{prefix}_CONFIRMATION_DEPTH", 12),
            chain_id=_env_int(f"{prefix}_CHAIN_ID", None),
            start_block=_env_int(f"{prefix}_START_BLOCK", None),
            max_gas_price_gwei=_env_float(f"{prefix}_MAX_GAS_PRICE_GWEI", None),
        )


@dataclass(frozen=True, slots=True)
class RouteConfig:
    """Lock events on `source` are unlocked on `destination`."""

    source: str
    destination: str

    def __post_init__(self) -> None:
        if self.source == self.destination:
            raise ValueError(f"Route source and destination must differ, got {self.source}")

    @classmethod
    def parse(cls, spec: str) -> "RouteConfig":
        parts = [part.strip() for part in spec.split(":")]
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid route {spec!r}, expected 'source:destination'")
        return cls(source=parts[0], destination=parts[1])


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for polling and pipeline supervision."""
    polling_interval: int = 12  # seconds between polls of one chain
    lookback_blocks: int = 100  # blocks to scan on first start without START_BLOCK
    max_block_range: int = 2000  # widest eth_getLogs request
    max_concurrent_lanes: int = 4  # nonce lanes processed in parallel per source chain
    request_timeout: int = 30  # HTTP request timeout in seconds
    drain_timeout: int = 30  # seconds in-flight work gets to finish on shutdown
    status_log_interval: int = 30  # seconds between status log lines

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.lookback_blocks < 0:
            raise ValueError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")

        if self.max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {self.max_block_range}")

        if self.max_concurrent_lanes <= 0:
            raise ValueError(f"Max concurrent lanes must be positive, got {self.max_concurrent_lanes}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.drain_timeout < 0:
            raise ValueError(f"Drain timeout must be non-negative, got {self.drain_timeout}")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff and attempt budget for submissions."""
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: float = 0.1  # fraction of each delay
    max_attempts: int = 5  # per RPC step, and signed transactions per event
    receipt_timeout: float = 120.0  # seconds to wait for a receipt per cycle
    receipt_poll_interval: float = 2.0  # seconds before the first receipt re-poll

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.base_delay < 0:
            raise ValueError(f"Retry base delay must be non-negative, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"Retry max delay ({self.max_delay}) must be at least the base delay ({self.base_delay})"
            )
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"Retry jitter must be between 0 and 1, got {self.jitter}")
        if self.max_attempts < 1:
            raise ValueError(f"Max attempts must be at least 1, got {self.max_attempts}")
        if self.max_attempts > 20:
            raise ValueError(f"Max attempts too high (max 20), got {self.max_attempts}")
        if self.receipt_timeout < 0:
            raise ValueError(f"Receipt timeout must be non-negative, got {self.receipt_timeout}")
        if self.receipt_poll_interval <= 0:
            raise ValueError(
                f"Receipt poll interval must be positive, got {self.receipt_poll_interval}"
            )


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the bridge relayer.

    Attributes:
        chains: Every chain the relayer talks to
        routes: Source -> destination pairs
        monitoring: Polling and supervision settings
        retry: Backoff and attempt budget
        state_db_path: SQLite file holding the ledger and checkpoints
        relayer_id: Owner recorded on reservations; defaults to the signing address
        local_mode: Sign with PRIVATE_KEY instead of a ROFL-derived key
        private_key: Signing key for local mode
        rofl_key_id: Key id requested from the ROFL daemon in production mode
    """

    chains: tuple[ChainConfig, ...]
    routes: tuple[RouteConfig, ...]
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    state_db_path: str = "relayer_state.db"
    relayer_id: str | None = None
    local_mode: bool = False
    private_key: str | None = None
    rofl_key_id: str = "bridge-relayer"

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.chains:
            raise ValueError("At least one chain is required (CHAINS)")

        names = [chain.name for chain in self.chains]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate chain names in CHAINS: {', '.join(names)}")

        if not self.routes:
            raise ValueError("At least one route is required (ROUTES)")

        sources = set()
        for route in self.routes:
            for name in (route.source, route.destination):
                if name not in names:
                    raise ValueError(f"Route {route.source}:{route.destination} uses unknown chain {name}")
            if route.source in sources:
                raise ValueError(f"Chain {route.source} has more than one default route")
            sources.add(route.source)

        if self.local_mode and not self.private_key:
            raise ValueError("Local mode requires PRIVATE_KEY environment variable")

        if self.private_key:
            # Basic private key validation (should be 64 hex chars, optionally with 0x prefix)
            key = self.private_key.removeprefix('0x')

            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )

            try:
                int(key, 16)
            except ValueError:
                raise ValueError(
                    "Invalid private key format. Must be hexadecimal"
                ) from None

    def chain(self, name: str) -> ChainConfig:
        for chain in self.chains:
            if chain.name == name:
                return chain
        raise KeyError(name)

    @property
    def source_chains(self) -> list[ChainConfig]:
        return [self.chain(route.source) for route in self.routes]

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "RelayerConfig":
        """Load configuration from environment variables.

        Args:
            local_mode: Whether to sign with PRIVATE_KEY (for testing)

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        chain_names = [name.strip() for name in os.environ.get("CHAINS", "").split(",") if name.strip()]
        if not chain_names:
            raise ValueError(
                "CHAINS environment variable is required. "
                "Example: CHAINS=ethereum,zksync"
            )

        chains = tuple(ChainConfig.from_env(name) for name in chain_names)

        route_specs = [spec.strip() for spec in os.environ.get("ROUTES", "").split(",") if spec.strip()]
        if route_specs:
            routes = tuple(RouteConfig.parse(spec) for spec in route_specs)
        elif len(chain_names) == 2:
            # Two chains without explicit routes relay in both directions
            first, second = chain_names
            routes = (RouteConfig(first, second), RouteConfig(second, first))
        else:
            raise ValueError(
                "ROUTES environment variable is required unless exactly two chains are configured. "
                "Example: ROUTES=ethereum:zksync,zksync:ethereum"
            )

        monitoring_config = MonitoringConfig(
            polling_interval=_env_int("POLLING_INTERVAL", 12),
            lookback_blocks=_env_int("LOOKBACK_BLOCKS", 100),
            max_block_range=_env_int("MAX_BLOCK_RANGE", 2000),
            max_concurrent_lanes=_env_int("MAX_CONCURRENT_LANES", 4),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            drain_timeout=_env_int("DRAIN_TIMEOUT", 30),
            status_log_interval=_env_int("STATUS_LOG_INTERVAL", 30),
        )

        retry_config = RetryConfig(
            base_delay=_env_float("RETRY_BASE_DELAY", 1.0),
            max_delay=_env_float("RETRY_MAX_DELAY", 60.0),
            jitter=_env_float("RETRY_JITTER", 0.1),
            max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 5),
            receipt_timeout=_env_float("RECEIPT_TIMEOUT", 120.0),
            receipt_poll_interval=_env_float("RECEIPT_POLL_INTERVAL", 2.0),
        )

        return cls(
            chains=chains,
            routes=routes,
            monitoring=monitoring_config,
            retry=retry_config,
            state_db_path=os.environ.get("STATE_DB_PATH", "relayer_state.db"),
            relayer_id=os.environ.get("RELAYER_ID") or None,
            local_mode=local_mode,
            private_key=os.environ.get("PRIVATE_KEY") if local_mode else None,
            rofl_key_id=os.environ.get("ROFL_KEY_ID", "bridge-relayer"),
        )

    def with_chain_ids(self, chain_ids: dict[str, int]) -> "RelayerConfig":
        """Return a copy with chain ids filled in from the connected RPC endpoints.

        Raises:
            ValueError: If a configured chain id disagrees with the RPC endpoint
        """
        chains = []
        for chain in self.chains:
            actual = chain_ids.get(chain.name, chain.chain_id)
            if chain.chain_id is not None and actual != chain.chain_id:
                raise ValueError(
                    f"{chain.name}: RPC reports chain id {actual}, configured {chain.chain_id}"
                )
            chains.append(replace(chain, chain_id=actual))
        return replace(self, chains=tuple(chains))

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Bridge Relayer Configuration")
        logger.info("=" * 60)

        for chain in self.chains:
            logger.info(f"Chain {chain.name}:")
            logger.info(f"  RPC URL: {chain.rpc_url}")
            logger.info(f"  Bridge: {chain.bridge_address}")
            logger.info(f"  Confirmation Depth: {chain.confirmation_depth}")
            if chain.chain_id:
                logger.info(f"  Chain ID: {chain.chain_id}")
            if chain.max_gas_price_gwei:
                logger.info(f"  Gas Price Ceiling: {chain.max_gas_price_gwei} gwei")

        logger.info("Routes:")
        for route in self.routes:
            logger.info(f"  {route.source} -> {route.destination}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Lookback Blocks: {self.monitoring.lookback_blocks}")
        logger.info(f"  Max Block Range: {self.monitoring.max_block_range}")
        logger.info(f"  Concurrent Lanes: {self.monitoring.max_concurrent_lanes}")

        logger.info("Retry Settings:")
        logger.info(f"  Backoff: {self.retry.base_delay}s .. {self.retry.max_delay}s")
        logger.info(f"  Max Attempts: {self.retry.max_attempts}")
        logger.info(f"  Receipt Timeout: {self.retry.receipt_timeout} seconds")

        logger.info("Relayer Settings:")
        logger.info(f"  Mode: {'LOCAL' if self.local_mode else 'ROFL'}")
        logger.info(f"  Relayer ID: {self.relayer_id or '[signing address]'}")
        logger.info(f"  State DB: {self.state_db_path}")
        if self.local_mode:
            logger.info(f"  Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        else:
            logger.info(f"  ROFL Key ID: {self.rofl_key_id}")

        logger.info("=" * 60)
