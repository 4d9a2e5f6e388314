"""
One source chain's relay cycle: recover, poll, process, checkpoint.

Events are grouped into nonce lanes (destination chain + signing identity).
Lanes run concurrently, but inside a lane events are submitted strictly in
the order they were discovered on the source chain.
"""

import asyncio
import logging
from collections import OrderedDict

from .checkpoint import CheckpointStore
from .errors import RelayerError
from .event_processor import EventProcessor
from .ledger import Ledger
from .models import Checkpoint, EventStatus, LockEvent, PollResult
from .submitter import TransactionSubmitter
from .watcher import ChainWatcher

logger = logging.getLogger(__name__)


class UnroutableEvent(RelayerError):
    """A lock event names a destination chain this relayer has no submitter for."""


class ChainPipeline:
    """Relays lock events from one source chain."""

    def __init__(
        self,
        name: str,
        watcher: ChainWatcher,
        submitters: dict[int, TransactionSubmitter],
        default_destination: int,
        ledger: Ledger,
        checkpoints: CheckpointStore,
        processor: EventProcessor,
        start_block: int | None = None,
        lookback_blocks: int = 100,
        max_concurrent_lanes: int = 4,
    ):
        """
        Initialize the pipeline.

        Args:
            name: Source chain name
            watcher: Watcher for the source chain
            submitters: Submitters keyed by destination chain id
            default_destination: Destination used when the event names none
            ledger: Shared ledger
            checkpoints: Shared checkpoint store
            processor: Per-event state machine
            start_block: First block to scan on a fresh database
            lookback_blocks: Blocks below the safe height to scan on a fresh
                database when no start block is configured
            max_concurrent_lanes: Nonce lanes processed at the same time
        """
        if default_destination not in submitters:
            raise ValueError(f"No submitter for default destination chain {default_destination}")

        self.name = name
        self.chain_id = watcher.chain_id
        self.watcher = watcher
        self.submitters = submitters
        self.default_destination = default_destination
        self.ledger = ledger
        self.checkpoints = checkpoints
        self.processor = processor
        self.start_block = start_block
        self.lookback_blocks = lookback_blocks
        self._lane_slots = asyncio.Semaphore(max_concurrent_lanes)
        self.stopping = asyncio.Event()

        self.last_poll: PollResult | None = None

    def submitter_for(self, event: LockEvent) -> TransactionSubmitter:
        destination = event.destination_chain_id or self.default_destination
        try:
            return self.submitters[destination]
        except KeyError:
            raise UnroutableEvent(
                f"{event.event_id} targets chain {destination}, which has no route from {self.name}"
            ) from None

    async def load_checkpoint(self) -> Checkpoint:
        """Stored checkpoint, creating one on first start."""
        checkpoint = self.checkpoints.get(self.chain_id)
        if checkpoint is not None:
            return checkpoint

        if self.start_block is not None:
            initial = max(self.start_block - 1, 0)
        else:
            initial = max(await self.watcher.safe_height() - self.lookback_blocks, 0)
        block_hash = await self.watcher.block_hash(initial)
        return self.checkpoints.initialize(self.chain_id, initial, block_hash)

    async def recover(self) -> dict[str, EventStatus]:
        """Resume this relayer's events left in flight by an earlier pass or run."""
        records = self.ledger.in_flight(self.chain_id, owner=self.processor.owner)
        if records:
            logger.info(f"[{self.name}] Recovering {len(records)} in-flight events")

        statuses: dict[str, EventStatus] = {}
        for record in records:
            if self.stopping.is_set():
                break
            destination = record.destination_chain_id or self.default_destination
            submitter = self.submitters.get(destination)
            if submitter is None:
                raise UnroutableEvent(f"{record.event_id} targets unknown chain {destination}")
            statuses[record.event_id] = await self.processor.resume(record, submitter)
        return statuses

    async def run_once(self) -> Checkpoint:
        """
        One full cycle.

        Returns:
            The checkpoint after the cycle
        """
        checkpoint = await self.load_checkpoint()
        await self.watcher.verify_anchor(checkpoint.last_processed_block, checkpoint.block_hash)

        recovered = await self.recover()
        if self.stopping.is_set():
            return checkpoint

        result = await self.watcher.poll(checkpoint.last_processed_block)
        self.last_poll = result
        if result.safe_height <= checkpoint.last_processed_block:
            return checkpoint

        statuses = await self.process_events(result.events, recovered)
        return await self.advance_checkpoint(checkpoint, result, statuses)

    async def process_events(
        self,
        events: tuple[LockEvent, ...],
        recovered: dict[str, EventStatus] | None = None,
    ) -> dict[str, EventStatus]:
        """
        Process events lane by lane; returns each event's resulting status.

        Events already handled by `recover` in this cycle are not driven again.
        Events not reached (lane blocked, shutdown) are absent from the result.
        """
        recovered = recovered or {}
        lanes: OrderedDict[tuple[int, str], list[tuple[LockEvent, TransactionSubmitter]]] = OrderedDict()
        statuses: dict[str, EventStatus] = {}
        for event in events:
            try:
                submitter = self.submitter_for(event)
            except UnroutableEvent as e:
                statuses[event.event_id.key] = self._fail_unroutable(event, e)
                continue
            lanes.setdefault(submitter.lane_key, []).append((event, submitter))

        async def run_lane(items: list[tuple[LockEvent, TransactionSubmitter]]) -> None:
            async with self._lane_slots:
                for index, (event, submitter) in enumerate(items):
                    if self.stopping.is_set():
                        return
                    key = event.event_id.key
                    if key in recovered and recovered[key].is_in_flight:
                        status = recovered[key]
                    else:
                        status = await self.processor.process(event, submitter)
                    statuses[key] = status
                    if status.is_in_flight:
                        # Later events on this lane wait behind the pending one
                        logger.info(
                            f"[{self.name}] {event.event_id} still {status.value}; "
                            f"holding {len(items) - index - 1} later lane events for the next cycle"
                        )
                        return

        results = await asyncio.gather(
            *(run_lane(items) for items in lanes.values()), return_exceptions=True
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome
        return statuses

    def _fail_unroutable(self, event: LockEvent, error: UnroutableEvent) -> EventStatus:
        status = self.ledger.observe(event)
        if status == EventStatus.SEEN:
            self.ledger.record_failed(event.event_id, str(error))
            return EventStatus.FAILED
        return status

    async def advance_checkpoint(
        self,
        checkpoint: Checkpoint,
        result: PollResult,
        statuses: dict[str, EventStatus],
    ) -> Checkpoint:
        """
        Advance past the contiguous prefix of events that reached a terminal state.

        The first event that is not terminal pins the checkpoint to the block
        before it, so the next cycle re-reads that block and resumes it.
        """
        target = result.safe_height
        target_hash = result.safe_block_hash
        for event in result.events:
            status = statuses.get(event.event_id.key)
            if status is None or not status.is_terminal:
                target = event.block_number - 1
                target_hash = None
                break

        if target <= checkpoint.last_processed_block:
            return checkpoint
        if target_hash is None:
            target_hash = await self.watcher.block_hash(target)
        return self.checkpoints.advance(
            self.chain_id, checkpoint.last_processed_block, target, target_hash
        )

    def get_status(self) -> dict:
        checkpoint = self.checkpoints.get(self.chain_id)
        return {
            "chain": self.name,
            "chain_id": self.chain_id,
            "checkpoint": checkpoint.last_processed_block if checkpoint else None,
            "safe_height": self.last_poll.safe_height if self.last_poll else None,
            "destinations": sorted(self.submitters),
            "processor": self.processor.get_stats(),
            "watcher": self.watcher.get_status(),
        }
