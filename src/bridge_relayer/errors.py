"""
Error taxonomy for the bridge relayer.

Transient errors are retried by the component that owns the call. Everything
else propagates to the relayer, which decides whether the event is failed or
the whole source-chain pipeline has to pause.
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""


class TransientRpcError(RelayerError):
    """Network or node failure; safe to retry with backoff."""


class DecodeError(RelayerError):
    """A log could not be parsed as a TokensLocked event.

    Never skipped: the source chain's pipeline pauses until someone looks at it.
    """

    def __init__(self, message: str, raw_log: object = None) -> None:
        super().__init__(message)
        self.raw_log = raw_log


class PermanentSubmissionError(RelayerError):
    """The unlock call is invalid (revert, fee ceiling) and must not be retried."""


class InvalidTransition(RelayerError):
    """A ledger status change that is not allowed from the record's current state."""

    def __init__(self, event_id: str, current: str | None, requested: str) -> None:
        super().__init__(
            f"Invalid transition for {event_id}: {current or 'missing'} -> {requested}"
        )
        self.event_id = event_id
        self.current = current
        self.requested = requested


class ReorgInvalidation(RelayerError):
    """A checkpointed block hash no longer matches the canonical chain."""

    def __init__(self, chain_id: int, block_number: int, expected: str, actual: str) -> None:
        super().__init__(
            f"Reorg detected on chain {chain_id} at block {block_number}: "
            f"checkpoint hash {expected[:10]}... != chain hash {actual[:10]}... "
            f"(confirmation depth too shallow?)"
        )
        self.chain_id = chain_id
        self.block_number = block_number
        self.expected = expected
        self.actual = actual


class CheckpointConflict(RelayerError):
    """Checkpoint moved underneath us; another relayer instance owns this chain."""


class NonceConflict(RelayerError):
    """The node rejected a transaction because its nonce was already used."""
