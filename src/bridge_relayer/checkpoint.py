"""
Checkpoint store: the last fully processed block of each source chain.

Advancing is a compare-and-set against the height the caller started from,
so an interrupted or concurrent relayer can never move a checkpoint it did
not read, and a checkpoint never moves backwards.
"""

import logging

from .errors import CheckpointConflict
from .models import Checkpoint
from .utils.state_store import StateStore, utc_now

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Per-chain checkpoint persistence."""

    def __init__(self, store: StateStore):
        self.store = store

    def get(self, chain_id: int) -> Checkpoint | None:
        with self.store.read() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE chain_id = ?", (chain_id,)
            ).fetchone()
        if row is None:
            return None
        return Checkpoint(
            chain_id=row["chain_id"],
            last_processed_block=row["last_processed_block"],
            block_hash=row["block_hash"],
            updated_at=row["updated_at"],
        )

    def initialize(self, chain_id: int, block_number: int, block_hash: str | None = None) -> Checkpoint:
        """Create the checkpoint if the chain has none yet; return whatever is stored."""
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO checkpoints (chain_id, last_processed_block, block_hash, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (chain_id, block_number, block_hash, utc_now()),
            )
            if cursor.rowcount:
                logger.info(f"Initialized checkpoint for chain {chain_id} at block {block_number}")
        checkpoint = self.get(chain_id)
        if checkpoint is None:
            raise CheckpointConflict(f"Checkpoint for chain {chain_id} vanished after initialization")
        return checkpoint

    def advance(
        self,
        chain_id: int,
        expected_block: int,
        new_block: int,
        block_hash: str | None = None,
    ) -> Checkpoint:
        """
        Move the checkpoint from `expected_block` to `new_block`.

        A `new_block` at or below `expected_block` leaves the row untouched.

        Raises:
            CheckpointConflict: If the stored height is not `expected_block`
        """
        if new_block <= expected_block:
            current = self.get(chain_id)
            if current is None or current.last_processed_block != expected_block:
                raise CheckpointConflict(
                    f"Checkpoint for chain {chain_id} is not at block {expected_block}"
                )
            return current

        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE checkpoints
                SET last_processed_block = ?, block_hash = ?, updated_at = ?
                WHERE chain_id = ? AND last_processed_block = ?
                """,
                (new_block, block_hash, utc_now(), chain_id, expected_block),
            )
            if cursor.rowcount != 1:
                row = conn.execute(
                    "SELECT last_processed_block FROM checkpoints WHERE chain_id = ?", (chain_id,)
                ).fetchone()
                actual = row["last_processed_block"] if row else None
                raise CheckpointConflict(
                    f"Checkpoint for chain {chain_id} moved: expected {expected_block}, found {actual}"
                )

        logger.info(f"Checkpoint chain {chain_id}: {expected_block} -> {new_block}")
        return Checkpoint(chain_id=chain_id, last_processed_block=new_block, block_hash=block_hash)

    def all(self) -> list[Checkpoint]:
        with self.store.read() as conn:
            rows = conn.execute("SELECT * FROM checkpoints ORDER BY chain_id").fetchall()
        return [
            Checkpoint(
                chain_id=row["chain_id"],
                last_processed_block=row["last_processed_block"],
                block_hash=row["block_hash"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]
