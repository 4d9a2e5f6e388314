"""
Event processor for lock events.

This module drives a single lock event through the ledger state machine
(seen -> submitting -> submitted -> confirmed, or failed), keeping the
per-event logic separate from polling and supervision.
"""

import logging
from typing import TYPE_CHECKING

from .errors import InvalidTransition, NonceConflict, PermanentSubmissionError, TransientRpcError
from .ledger import Ledger
from .models import EventId, EventStatus, LockEvent, ProcessedRecord, ReconcileState, SignedUnlock

if TYPE_CHECKING:
    from .submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processes lock events from one source chain against the ledger."""

    def __init__(self, ledger: Ledger, owner: str, max_attempts: int = 5) -> None:
        """Initialize the event processor.

        Args:
            ledger: Ledger holding every event's status
            owner: This relayer's id; recorded on reservations it takes
            max_attempts: Signed transactions allowed per event before it is failed
        """
        self.ledger = ledger
        self.owner = owner
        self.max_attempts = max_attempts

        # Event ids some task in this process is currently driving
        self._active: set[str] = set()

        self.stats: dict[str, int] = {
            "processed": 0,
            "confirmed": 0,
            "failed": 0,
            "pending": 0,
            "skipped": 0,
        }

    async def process(self, event: LockEvent, submitter: "TransactionSubmitter") -> EventStatus:
        """
        Drive `event` as far as it can go right now.

        Returns:
            The event's status afterwards. SUBMITTING or SUBMITTED means the
            event is still in flight and must hold the checkpoint back.

        Raises:
            TransientRpcError: RPC kept failing; the ledger still reflects the
                last persisted phase and the event is resumed on the next pass
            InvalidTransition: Ledger integrity fault
        """
        self.stats["processed"] += 1
        status = self.ledger.observe(event, submitter.chain_id)
        if status.is_terminal:
            self.stats["skipped"] += 1
            return status

        key = event.event_id.key
        if key in self._active:
            logger.debug(f"{key} is already being driven by another task")
            return status

        self._active.add(key)
        try:
            if status == EventStatus.SEEN:
                reservation = self.ledger.reserve(event.event_id, self.owner)
                if not reservation:
                    logger.info(f"{event.event_id} already {reservation.status.value}; not submitting")
                    return reservation.status
                return await self._submit(event, submitter)
            record = self.ledger.get(key)
            if record is None:
                raise InvalidTransition(key, None, status.value)
            return await self._resume(record, submitter, event)
        finally:
            self._active.discard(key)

    async def resume(
        self,
        record: ProcessedRecord,
        submitter: "TransactionSubmitter",
        event: LockEvent | None = None,
    ) -> EventStatus:
        """
        Continue an event left in submitting/submitted by an earlier pass or run.

        A record with no signed transaction was reserved but never signed, so
        submitting it now is its first submission. Anything that was signed is
        reconciled against the destination chain instead of being sent again.
        """
        if record.event_id in self._active:
            logger.debug(f"{record.event_id} is already being driven by another task")
            return record.status

        self._active.add(record.event_id)
        try:
            return await self._resume(record, submitter, event)
        finally:
            self._active.discard(record.event_id)

    async def _resume(
        self,
        record: ProcessedRecord,
        submitter: "TransactionSubmitter",
        event: LockEvent | None,
    ) -> EventStatus:
        if record.owner is not None and record.owner != self.owner:
            logger.warning(
                f"{record.event_id} is in flight under relayer '{record.owner}'; leaving it alone"
            )
            return record.status

        if record.unlock_tx_hash is None:
            if record.status != EventStatus.SUBMITTING:
                self._fail(record.event_id, "submitted record has no transaction hash")
                return EventStatus.FAILED
            logger.info(f"Resuming {record.event_id}: reserved but never signed")
            return await self._submit(event or _event_from_record(record), submitter)

        if record.status == EventStatus.SUBMITTING:
            logger.info(f"Resuming {record.event_id}: signed {record.unlock_tx_hash[:10]}... before crash")

        try:
            result = await submitter.reconcile(record.unlock_tx_hash, record.raw_tx)
        except TransientRpcError as e:
            self.ledger.record_error(record.event_id, str(e))
            raise

        match result.state:
            case ReconcileState.CONFIRMED | ReconcileState.REVERTED | ReconcileState.PENDING:
                if record.status == EventStatus.SUBMITTING:
                    self.ledger.record_submitted(record.event_id, record.unlock_tx_hash)
                if result.state == ReconcileState.PENDING:
                    receipt = await submitter.wait_for_receipt(record.unlock_tx_hash)
                    return self._settle(record.event_id, receipt)
                return self._settle(record.event_id, result.receipt)
            case ReconcileState.DROPPED:
                if record.attempts >= self.max_attempts:
                    self._fail(
                        record.event_id,
                        f"transaction {record.unlock_tx_hash} dropped and attempt budget "
                        f"({self.max_attempts}) exhausted",
                    )
                    return EventStatus.FAILED
                logger.warning(
                    f"{record.unlock_tx_hash[:10]}... for {record.event_id} can no longer land; re-signing"
                )
                self.ledger.record_attempt(record.event_id)
                return await self._submit(event or _event_from_record(record), submitter)

    async def _submit(self, event: LockEvent, submitter: "TransactionSubmitter") -> EventStatus:
        key = event.event_id.key

        def persist(signed: SignedUnlock) -> None:
            self.ledger.record_signed(key, signed.tx_hash, signed.raw_tx, signed.nonce)

        try:
            signed = await submitter.submit(event, on_signed=persist)
        except PermanentSubmissionError as e:
            self._fail(key, str(e))
            return EventStatus.FAILED
        except NonceConflict as e:
            # Lane has been resynced; the next pass reconciles and re-signs
            self.ledger.record_error(key, str(e))
            return self.ledger.status_of(key) or EventStatus.SUBMITTING
        except TransientRpcError as e:
            record = self.ledger.get(key)
            if record is not None and record.unlock_tx_hash is None:
                # Nothing was signed, so giving up cannot strand a transaction
                if self.ledger.record_attempt(key) > self.max_attempts:
                    self._fail(key, f"attempt budget ({self.max_attempts}) exhausted: {e}")
                    return EventStatus.FAILED
            self.ledger.record_error(key, str(e))
            raise

        self.ledger.record_submitted(key, signed.tx_hash)
        receipt = await submitter.wait_for_receipt(signed.tx_hash)
        return self._settle(key, receipt)

    def _settle(self, event_id: str, receipt) -> EventStatus:
        if receipt is None:
            self.stats["pending"] += 1
            return EventStatus.SUBMITTED
        if receipt.success:
            self.ledger.record_confirmed(event_id)
            self.stats["confirmed"] += 1
            return EventStatus.CONFIRMED
        self._fail(event_id, f"unlock transaction {receipt.tx_hash} reverted in block {receipt.block_number}")
        return EventStatus.FAILED

    def _fail(self, event_id: str, error: str) -> None:
        self.ledger.record_failed(event_id, error)
        self.stats["failed"] += 1

    def get_stats(self) -> dict:
        """
        Get current processor statistics.

        Returns:
            Dictionary with per-outcome counters
        """
        return dict(self.stats)


def _event_from_record(record: ProcessedRecord) -> LockEvent:
    """Rebuild the submission payload of an event from its ledger row."""
    return LockEvent(
        event_id=EventId.parse(record.event_id),
        block_number=record.block_number,
        block_hash="",
        sender="",
        recipient=record.recipient,
        amount=record.amount,
        destination_chain_id=record.destination_chain_id,
    )
