"""
Ledger of observed lock events.

Every lock event gets exactly one row keyed by its event id. The only way to
get permission to send an unlock transaction is `reserve`, a compare-and-set
from `seen` to `submitting`, so a crash anywhere after that point can be
resumed from the persisted status instead of submitting twice.
"""

import logging
import sqlite3

from .errors import InvalidTransition
from .models import EventId, EventStatus, LockEvent, ProcessedRecord, Reservation
from .utils.state_store import StateStore, utc_now

logger = logging.getLogger(__name__)

# Allowed source states for each transition
_SIGNABLE = (EventStatus.SUBMITTING, EventStatus.SUBMITTED)
_SUBMITTABLE = (EventStatus.SUBMITTING, EventStatus.SUBMITTED)
_CONFIRMABLE = (EventStatus.SUBMITTED,)
_FAILABLE = (EventStatus.SEEN, EventStatus.SUBMITTING, EventStatus.SUBMITTED)


def _key(event_id: EventId | str) -> str:
    return event_id.key if isinstance(event_id, EventId) else event_id


def _row_to_record(row: sqlite3.Row) -> ProcessedRecord:
    return ProcessedRecord(
        event_id=row["event_id"],
        status=EventStatus(row["status"]),
        source_chain_id=row["source_chain_id"],
        block_number=row["block_number"],
        recipient=row["recipient"],
        amount=int(row["amount"]),
        destination_chain_id=row["destination_chain_id"],
        unlock_tx_hash=row["unlock_tx_hash"],
        raw_tx=bytes(row["raw_tx"]) if row["raw_tx"] is not None else None,
        nonce=row["nonce"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        owner=row["owner"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Ledger:
    """Persistent dedup store for lock events."""

    def __init__(self, store: StateStore):
        self.store = store

    def observe(self, event: LockEvent, destination_chain_id: int | None = None) -> EventStatus:
        """Record an event as seen if it is new. Returns its current status."""
        now = utc_now()
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_events (
                    event_id, source_chain_id, block_number, recipient, amount,
                    destination_chain_id, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id.key,
                    event.event_id.source_chain_id,
                    event.block_number,
                    event.recipient,
                    str(event.amount),
                    destination_chain_id if destination_chain_id is not None else event.destination_chain_id,
                    EventStatus.SEEN.value,
                    now,
                    now,
                ),
            )
            if cursor.rowcount:
                logger.debug(f"Observed new event {event.event_id}")
                return EventStatus.SEEN
            return self._status(conn, event.event_id.key)

    def reserve(self, event_id: EventId | str, owner: str) -> Reservation:
        """
        Atomically move an event from seen to submitting.

        Only the caller that gets `granted=True` may send a transaction for
        this event. Everyone else sees the status the event already has.

        Raises:
            InvalidTransition: If the event was never observed
        """
        key = _key(event_id)
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE processed_events
                SET status = ?, owner = ?, attempts = attempts + 1, updated_at = ?
                WHERE event_id = ? AND status = ?
                """,
                (EventStatus.SUBMITTING.value, owner, utc_now(), key, EventStatus.SEEN.value),
            )
            if cursor.rowcount == 1:
                logger.info(f"Reserved {key} for {owner}")
                return Reservation(granted=True, status=EventStatus.SUBMITTING)
            current = self._status(conn, key)
            if current is None:
                raise InvalidTransition(key, None, EventStatus.SUBMITTING.value)
            return Reservation(granted=False, status=current)

    def record_signed(self, event_id: EventId | str, tx_hash: str, raw_tx: bytes, nonce: int) -> None:
        """Attach a signed transaction to a reserved event before it is broadcast."""
        key = _key(event_id)
        with self.store.transaction() as conn:
            self._require(conn, key, _SIGNABLE, "signed")
            conn.execute(
                """
                UPDATE processed_events
                SET unlock_tx_hash = ?, raw_tx = ?, nonce = ?, updated_at = ?
                WHERE event_id = ?
                """,
                (tx_hash, raw_tx, nonce, utc_now(), key),
            )

    def record_submitted(self, event_id: EventId | str, tx_hash: str) -> None:
        key = _key(event_id)
        with self.store.transaction() as conn:
            self._require(conn, key, _SUBMITTABLE, EventStatus.SUBMITTED.value)
            conn.execute(
                """
                UPDATE processed_events
                SET status = ?, unlock_tx_hash = ?, last_error = NULL, updated_at = ?
                WHERE event_id = ?
                """,
                (EventStatus.SUBMITTED.value, tx_hash, utc_now(), key),
            )
        logger.info(f"Event {key} submitted as {tx_hash}")

    def record_confirmed(self, event_id: EventId | str) -> None:
        key = _key(event_id)
        with self.store.transaction() as conn:
            self._require(conn, key, _CONFIRMABLE, EventStatus.CONFIRMED.value)
            conn.execute(
                "UPDATE processed_events SET status = ?, updated_at = ? WHERE event_id = ?",
                (EventStatus.CONFIRMED.value, utc_now(), key),
            )
        logger.info(f"Event {key} confirmed")

    def record_failed(self, event_id: EventId | str, error: str) -> None:
        key = _key(event_id)
        with self.store.transaction() as conn:
            self._require(conn, key, _FAILABLE, EventStatus.FAILED.value)
            conn.execute(
                """
                UPDATE processed_events
                SET status = ?, last_error = ?, updated_at = ?
                WHERE event_id = ?
                """,
                (EventStatus.FAILED.value, error, utc_now(), key),
            )
        logger.error(f"Event {key} FAILED and needs manual intervention: {error}")

    def record_error(self, event_id: EventId | str, error: str) -> None:
        """Remember the latest transient error without changing status.

        Raises:
            InvalidTransition: If the event was never observed
        """
        key = _key(event_id)
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE processed_events SET last_error = ?, updated_at = ? WHERE event_id = ?",
                (error, utc_now(), key),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(key, None, "error")

    def record_attempt(self, event_id: EventId | str) -> int:
        """Count another submission attempt for an in-flight event."""
        key = _key(event_id)
        with self.store.transaction() as conn:
            self._require(conn, key, _SIGNABLE, "attempt")
            conn.execute(
                "UPDATE processed_events SET attempts = attempts + 1, updated_at = ? WHERE event_id = ?",
                (utc_now(), key),
            )
            row = conn.execute(
                "SELECT attempts FROM processed_events WHERE event_id = ?", (key,)
            ).fetchone()
            return row["attempts"]

    def status_of(self, event_id: EventId | str) -> EventStatus | None:
        with self.store.read() as conn:
            return self._status(conn, _key(event_id))

    def get(self, event_id: EventId | str) -> ProcessedRecord | None:
        with self.store.read() as conn:
            row = conn.execute(
                "SELECT * FROM processed_events WHERE event_id = ?", (_key(event_id),)
            ).fetchone()
        return _row_to_record(row) if row else None

    def in_flight(self, source_chain_id: int, owner: str | None = None) -> list[ProcessedRecord]:
        """Records of a source chain left in submitting/submitted, oldest block first."""
        query = """
            SELECT * FROM processed_events
            WHERE source_chain_id = ? AND status IN (?, ?)
        """
        params: list = [source_chain_id, EventStatus.SUBMITTING.value, EventStatus.SUBMITTED.value]
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        query += " ORDER BY block_number, event_id"
        with self.store.read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def records(self, status: EventStatus, source_chain_id: int | None = None) -> list[ProcessedRecord]:
        query = "SELECT * FROM processed_events WHERE status = ?"
        params: list = [status.value]
        if source_chain_id is not None:
            query += " AND source_chain_id = ?"
            params.append(source_chain_id)
        query += " ORDER BY source_chain_id, block_number"
        with self.store.read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def counts(self) -> dict[str, int]:
        with self.store.read() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM processed_events GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in EventStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    @staticmethod
    def _status(conn: sqlite3.Connection, key: str) -> EventStatus | None:
        row = conn.execute(
            "SELECT status FROM processed_events WHERE event_id = ?", (key,)
        ).fetchone()
        return EventStatus(row["status"]) if row else None

    def _require(
        self,
        conn: sqlite3.Connection,
        key: str,
        allowed: tuple[EventStatus, ...],
        requested: str,
    ) -> EventStatus:
        current = self._status(conn, key)
        if current not in allowed:
            raise InvalidTransition(key, current.value if current else None, requested)
        return current
