"""
SQLite-backed persistent state for the bridge relayer.

Holds the ledger and checkpoint tables in one database file. Every write that
decides something (reserving an event, advancing a checkpoint) goes through
`transaction()`, which takes the write lock up front with BEGIN IMMEDIATE so
concurrent relayer processes serialize on the file instead of racing.
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        event_id TEXT PRIMARY KEY,
        source_chain_id INTEGER NOT NULL,
        block_number INTEGER NOT NULL,
        recipient TEXT NOT NULL,
        amount TEXT NOT NULL,
        destination_chain_id INTEGER,
        status TEXT NOT NULL,
        unlock_tx_hash TEXT,
        raw_tx BLOB,
        nonce INTEGER,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        owner TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_processed_events_status
        ON processed_events (status, source_chain_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        chain_id INTEGER PRIMARY KEY,
        last_processed_block INTEGER NOT NULL,
        block_hash TEXT,
        updated_at TEXT NOT NULL
    )
    """,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """
    Owns the SQLite database used by the ledger and checkpoint store.

    A path of ":memory:" keeps a single shared connection, which is what the
    tests use.
    """

    def __init__(self, db_path: str | Path = "relayer_state.db", timeout: float = 30.0):
        """
        Initialize the state store and create tables if needed.

        Args:
            db_path: SQLite file path, or ":memory:"
            timeout: Seconds to wait for another process holding the write lock
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self._shared_conn: sqlite3.Connection | None = None
        self._transaction_conn: sqlite3.Connection | None = None
        self._init_db()

    def _open(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are started explicitly below
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self.db_path == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = self._open()
            yield self._shared_conn
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one BEGIN IMMEDIATE transaction.

        Nested calls reuse the outer transaction.
        """
        if self._transaction_conn is not None:
            yield self._transaction_conn
            return
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._transaction_conn = conn
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            finally:
                self._transaction_conn = None

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        if self._transaction_conn is not None:
            yield self._transaction_conn
            return
        with self._connection() as conn:
            yield conn

    def _init_db(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
        logger.debug(f"State store ready at {self.db_path}")

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
