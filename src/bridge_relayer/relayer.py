"""
Bridge relayer implementation.

This module contains the main relayer service: it wires watchers, submitters
and the shared ledger into one pipeline per source chain, supervises each
pipeline with backoff, and drains in-flight work on shutdown.
"""

import asyncio
import logging
from typing import Optional

from .checkpoint import CheckpointStore
from .config import RelayerConfig
from .errors import (
    CheckpointConflict,
    DecodeError,
    InvalidTransition,
    ReorgInvalidation,
    TransientRpcError,
)
from .event_processor import EventProcessor
from .ledger import Ledger
from .models import ChainState, EventStatus
from .pipeline import ChainPipeline, UnroutableEvent
from .submitter import TransactionSubmitter
from .utils.chain_client import ChainClient
from .utils.contract_utility import BridgeContract
from .utils.nonce_manager import NonceManager
from .utils.retry import RetryPolicy
from .utils.rofl_utility import RoflUtility
from .utils.signer import AccountSigner
from .utils.state_store import StateStore
from .watcher import ChainWatcher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Errors that stop one chain's pipeline until an operator intervenes
PAUSING_ERRORS = (DecodeError, InvalidTransition, ReorgInvalidation, CheckpointConflict, UnroutableEvent)


class BridgeRelayer:
    """
    Main relayer service that supervises one pipeline per source chain.

    Pipelines share nothing but the ledger and checkpoint store, so a chain
    that pauses on a data-integrity fault leaves the others running.
    """

    def __init__(
        self,
        config: RelayerConfig,
        signer: AccountSigner,
        clients: Optional[dict[str, ChainClient]] = None,
        store: Optional[StateStore] = None,
    ):
        """
        Initialize the relayer.

        Args:
            config: Relayer configuration with every chain id resolved
            signer: Signing identity for unlock transactions
            clients: RPC clients by chain name (built from config if omitted)
            store: State store (opened at config.state_db_path if omitted)
        """
        self.config = config
        self.signer = signer
        # Nonce lanes are keyed by the signing address, so ownership follows it too
        self.owner = config.relayer_id or signer.address
        self.running = False

        self.clients = clients or {
            chain.name: ChainClient(chain.rpc_url, chain.name, config.monitoring.request_timeout)
            for chain in config.chains
        }
        self.store = store or StateStore(config.state_db_path)
        self.ledger = Ledger(self.store)
        self.checkpoints = CheckpointStore(self.store)
        self.nonce_manager = NonceManager()
        self.retry = RetryPolicy(
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            jitter=config.retry.jitter,
            max_attempts=config.retry.max_attempts,
        )

        self._init_components()

        # Async coordination
        self.shutdown_event = asyncio.Event()

    def _init_components(self) -> None:
        """Build contracts, submitters and one pipeline per route."""
        self.contracts: dict[str, BridgeContract] = {}
        self.submitters: dict[str, TransactionSubmitter] = {}
        for chain in self.config.chains:
            if chain.chain_id is None:
                raise ValueError(f"Chain id for {chain.name} is not resolved")
            self.contracts[chain.name] = BridgeContract(chain.bridge_address)
            self.submitters[chain.name] = TransactionSubmitter(
                chain_id=chain.chain_id,
                client=self.clients[chain.name],
                contract=self.contracts[chain.name],
                signer=self.signer,
                nonce_manager=self.nonce_manager,
                retry=self.retry,
                max_gas_price=chain.max_gas_price_wei,
                receipt_timeout=self.config.retry.receipt_timeout,
                receipt_poll_interval=self.config.retry.receipt_poll_interval,
                name=chain.name,
            )

        self.pipelines: dict[str, ChainPipeline] = {}
        self.chain_states: dict[str, ChainState] = {}
        for route in self.config.routes:
            source = self.config.chain(route.source)
            destination = self.config.chain(route.destination)
            watcher = ChainWatcher(
                chain_id=source.chain_id,
                client=self.clients[source.name],
                contract=self.contracts[source.name],
                confirmation_depth=source.confirmation_depth,
                max_block_range=self.config.monitoring.max_block_range,
                name=source.name,
            )
            submitters = {
                chain.chain_id: self.submitters[chain.name]
                for chain in self.config.chains
                if chain.name != source.name
            }
            self.pipelines[source.name] = ChainPipeline(
                name=source.name,
                watcher=watcher,
                submitters=submitters,
                default_destination=destination.chain_id,
                ledger=self.ledger,
                checkpoints=self.checkpoints,
                processor=EventProcessor(
                    self.ledger, self.owner, self.config.retry.max_attempts
                ),
                start_block=source.start_block,
                lookback_blocks=self.config.monitoring.lookback_blocks,
                max_concurrent_lanes=self.config.monitoring.max_concurrent_lanes,
            )
            self.chain_states[source.name] = ChainState(name=source.name, chain_id=source.chain_id)
            logger.info(
                f"Route {source.name} ({source.chain_id}) -> {destination.name} ({destination.chain_id}), "
                f"confirmation depth {source.confirmation_depth}"
            )

    @classmethod
    async def from_env(cls, local_mode: bool = False) -> "BridgeRelayer":
        """
        Create a BridgeRelayer from environment variables.

        Args:
            local_mode: Sign with PRIVATE_KEY instead of a ROFL-derived key

        Returns:
            Configured BridgeRelayer instance

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env(local_mode=local_mode)
        return await cls.create(config)

    @classmethod
    async def create(cls, config: RelayerConfig, clients: Optional[dict[str, ChainClient]] = None) -> "BridgeRelayer":
        """Resolve chain ids, load the signing identity and build the relayer."""
        clients = clients or {
            chain.name: ChainClient(chain.rpc_url, chain.name, config.monitoring.request_timeout)
            for chain in config.chains
        }
        chain_ids = {}
        for chain in config.chains:
            chain_ids[chain.name] = await clients[chain.name].get_chain_id()
        config = config.with_chain_ids(chain_ids)
        config.log_config()

        if config.local_mode:
            signer = AccountSigner.from_key(config.private_key)
        else:
            signer = await AccountSigner.from_rofl(config.rofl_key_id, RoflUtility())
        logger.info(f"Signing unlocks as {signer.address}")

        return cls(config, signer, clients=clients)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _supervise(self, pipeline: ChainPipeline, once: bool = False) -> None:
        """Run one chain's pipeline until shutdown, restarting it with backoff."""
        state = self.chain_states[pipeline.name]
        failures = 0
        while not self.shutdown_event.is_set():
            state.state = "running"
            try:
                checkpoint = await pipeline.run_once()
            except PAUSING_ERRORS as e:
                self._pause(state, e)
                return
            except TransientRpcError as e:
                failures += 1
                state.consecutive_failures = failures
                state.last_error = str(e)
                state.state = "backing_off"
                delay = self.retry.delay(failures)
                logger.warning(f"[{pipeline.name}] RPC failure #{failures}: {e}; restarting in {delay:.1f}s")
                await self._sleep(delay)
                continue
            except Exception as e:
                # Unclassified errors are not known to go away on their own
                logger.error(f"[{pipeline.name}] Unexpected pipeline error: {e}", exc_info=True)
                self._pause(state, e)
                return

            failures = 0
            state.consecutive_failures = 0
            state.last_error = None
            logger.debug(f"[{pipeline.name}] Cycle done at block {checkpoint.last_processed_block}")
            if once:
                break
            state.state = "idle"
            await self._sleep(self.config.monitoring.polling_interval)

        state.state = "stopped"

    def _pause(self, state: ChainState, error: Exception) -> None:
        state.state = "paused"
        state.last_error = f"{type(error).__name__}: {error}"
        logger.error(f"[{state.name}] PIPELINE PAUSED, manual intervention required: {state.last_error}")

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.config.monitoring.status_log_interval)
            status = self.get_status()
            counts = status["ledger"]
            logger.info(
                f"Status: {counts['submitting'] + counts['submitted']} in flight, "
                f"{counts['confirmed']} confirmed, {counts['failed']} failed"
            )
            for name, chain in status["chains"].items():
                if chain["state"] == "paused":
                    logger.error(f"[{name}] still PAUSED: {chain['last_error']}")
            if counts["failed"]:
                logger.error(f"{counts['failed']} events are FAILED and need manual intervention")

    async def _drain(self, tasks: dict[str, asyncio.Task]) -> None:
        """Give in-flight work `drain_timeout` to finish, then cancel it."""
        for pipeline in self.pipelines.values():
            pipeline.stopping.set()

        pending = [task for task in tasks.values() if not task.done()]
        if pending:
            logger.info(f"Draining {len(pending)} pipelines (up to {self.config.monitoring.drain_timeout}s)...")
            _, still_running = await asyncio.wait(pending, timeout=self.config.monitoring.drain_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning(
                    f"Cancelled {len(still_running)} pipelines mid-cycle; "
                    "their events resume from the ledger on restart"
                )

    async def run(self, once: bool = False) -> None:
        """
        Main event loop for the relayer service.

        Args:
            once: Run a single cycle per chain and return
        """
        self.running = True
        logger.info("Bridge Relayer starting...")
        logger.info(f"Polling interval: {self.config.monitoring.polling_interval}s")

        tasks: dict[str, asyncio.Task] = {}
        status_task: asyncio.Task | None = None
        try:
            tasks = {
                name: asyncio.create_task(self._supervise(pipeline, once=once), name=f"pipeline-{name}")
                for name, pipeline in self.pipelines.items()
            }
            if not once:
                status_task = asyncio.create_task(self._periodic_status_logger())

            logger.info(f"Relaying from {len(tasks)} source chains, waiting for events...")

            # Wait until shutdown or every pipeline has stopped
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if all(task.done() for task in tasks.values()):
                    logger.info("All pipelines have stopped")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._drain(tasks)
            if status_task is not None:
                status_task.cancel()
                await asyncio.gather(status_task, return_exceptions=True)
            logger.info("Bridge Relayer stopped")

    def get_status(self) -> dict:
        """Observable status: chain pipelines, submitters, ledger counts and failed events."""
        return {
            "running": self.running,
            "chains": {
                name: {
                    "state": state.state,
                    "chain_id": state.chain_id,
                    "checkpoint": (cp.last_processed_block if (cp := self.checkpoints.get(state.chain_id)) else None),
                    "last_error": state.last_error,
                    "consecutive_failures": state.consecutive_failures,
                    "pipeline": self.pipelines[name].get_status(),
                }
                for name, state in self.chain_states.items()
            },
            "submitters": {name: submitter.get_status() for name, submitter in self.submitters.items()},
            "ledger": self.ledger.counts(),
            "failed_events": [
                {"event_id": record.event_id, "error": record.last_error}
                for record in self.ledger.records(EventStatus.FAILED)
            ],
        }

    def stop(self) -> None:
        """Stop the relayer service."""
        self.running = False
        self.shutdown_event.set()
        for pipeline in self.pipelines.values():
            pipeline.stopping.set()
