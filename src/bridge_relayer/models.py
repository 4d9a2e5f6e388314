"""
Shared data models for the bridge relayer.

This module contains data classes and types used across the relayer components.
"""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, slots=True)
class EventId:
    """Deterministic identifier of a lock event.

    Stable across re-fetches of the same block, so it doubles as the
    ledger's primary key (see `key`).
    """
    source_chain_id: int
    source_tx_hash: str
    log_index: int

    @property
    def key(self) -> str:
        return f"{self.source_chain_id}:{self.source_tx_hash.lower()}:{self.log_index}"

    @classmethod
    def parse(cls, key: str) -> "EventId":
        chain_id, tx_hash, log_index = key.split(":")
        return cls(int(chain_id), tx_hash, int(log_index))

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class LockEvent:
    """A TokensLocked event observed on a source chain.

    Attributes:
        event_id: (source chain id, tx hash, log index)
        block_number: Block number where the event occurred
        block_hash: Hash of that block, used for reorg detection
        sender: Address that locked the tokens
        recipient: Address to unlock to on the destination chain
        amount: Amount in the token's smallest unit
        destination_chain_id: Destination named by the event, if the ABI carries one
    """
    event_id: EventId
    block_number: int
    block_hash: str
    sender: str
    recipient: str
    amount: int
    destination_chain_id: int | None = None

    @property
    def position(self) -> tuple[int, int]:
        """Ordering key inside one source chain."""
        return (self.block_number, self.event_id.log_index)


class EventStatus(str, Enum):
    """Lifecycle of a lock event in the ledger."""
    SEEN = "seen"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.CONFIRMED, EventStatus.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in (EventStatus.SUBMITTING, EventStatus.SUBMITTED)


@dataclass(slots=True)
class ProcessedRecord:
    """The ledger's row for one lock event."""
    event_id: str
    status: EventStatus
    source_chain_id: int
    block_number: int
    recipient: str
    amount: int
    destination_chain_id: int | None = None
    unlock_tx_hash: str | None = None
    raw_tx: bytes | None = None
    nonce: int | None = None
    attempts: int = 0
    last_error: str | None = None
    owner: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True, slots=True)
class Reservation:
    """Outcome of `Ledger.reserve`; only `granted` authorizes a submission."""
    granted: bool
    status: EventStatus

    def __bool__(self) -> bool:
        return self.granted


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Last fully processed block of a source chain."""
    chain_id: int
    last_processed_block: int
    block_hash: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True, slots=True)
class PollResult:
    """Events found by one watcher poll, ordered by (block, log index)."""
    events: tuple[LockEvent, ...]
    safe_height: int
    safe_block_hash: str | None = None


@dataclass(frozen=True, slots=True)
class SignedUnlock:
    """A signed unlock transaction, persisted before it is broadcast."""
    tx_hash: str
    raw_tx: bytes
    nonce: int
    gas: int
    gas_price: int


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_hash: str
    block_number: int
    success: bool
    gas_used: int = 0


class ReconcileState(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    PENDING = "pending"
    DROPPED = "dropped"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    state: ReconcileState
    receipt: Receipt | None = None


@dataclass(slots=True)
class ChainState:
    """Supervisor-visible state of one source chain's pipeline."""
    name: str
    chain_id: int
    state: str = "starting"
    last_error: str | None = None
    consecutive_failures: int = 0
