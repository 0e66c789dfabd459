import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from lcstore.core.errors import StorageFailureError
from lcstore.utils.logger import StoreLogger, get_logger
from lcstore.utils.validation import parse_u64

logger = get_logger("storage.sqlite")

SYNC_STATE_ID = 1


# =============================================================================
# u64 Column Encoding
# =============================================================================


def u64_to_db(value: Optional[int]) -> Optional[bytes]:
    """
    Encode a u64 as an 8-byte big-endian BLOB.

    SQLite compares BLOBs with memcmp, so ORDER BY and range queries on
    these columns follow numeric order.
    """
    if value is None:
        return None
    return parse_u64(value).to_bytes(8, byteorder="big")


def u64_from_db(data: Optional[bytes]) -> Optional[int]:
    """Decode an 8-byte big-endian BLOB back into an int."""
    if data is None:
        return None
    return int.from_bytes(data, byteorder="big")


# =============================================================================
# Schema
# =============================================================================

SCHEMA: List[Tuple[str, str]] = [
    # Content-addressed blobs
    ("account_code", """
        CREATE TABLE IF NOT EXISTS account_code (
            root TEXT PRIMARY KEY,
            payload BLOB NOT NULL
        )
    """),
    ("account_storage", """
        CREATE TABLE IF NOT EXISTS account_storage (
            root TEXT PRIMARY KEY,
            payload BLOB NOT NULL
        )
    """),
    ("account_vaults", """
        CREATE TABLE IF NOT EXISTS account_vaults (
            root TEXT PRIMARY KEY,
            payload BLOB NOT NULL
        )
    """),
    ("note_scripts", """
        CREATE TABLE IF NOT EXISTS note_scripts (
            script_hash TEXT PRIMARY KEY,
            payload BLOB NOT NULL
        )
    """),
    ("transaction_scripts", """
        CREATE TABLE IF NOT EXISTS transaction_scripts (
            script_hash TEXT PRIMARY KEY,
            payload BLOB
        )
    """),

    # Accounts, one row per observed (id, nonce)
    ("accounts", """
        CREATE TABLE IF NOT EXISTS accounts (
            id BLOB NOT NULL,
            nonce BLOB NOT NULL,
            code_root TEXT NOT NULL,
            storage_root TEXT NOT NULL,
            vault_root TEXT NOT NULL,
            committed INTEGER NOT NULL,
            account_seed BLOB,
            PRIMARY KEY (id, nonce)
        )
    """),
    ("account_auth", """
        CREATE TABLE IF NOT EXISTS account_auth (
            account_id BLOB PRIMARY KEY,
            auth_info BLOB NOT NULL,
            pub_key BLOB NOT NULL
        )
    """),

    # Notes
    ("input_notes", """
        CREATE TABLE IF NOT EXISTS input_notes (
            note_id TEXT PRIMARY KEY,
            assets BLOB NOT NULL,
            recipient TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('Pending', 'Committed', 'Processing', 'Consumed')),
            metadata TEXT,
            details TEXT NOT NULL,
            nullifier TEXT,
            script_hash TEXT,
            inclusion_proof BLOB,
            consumer_transaction_id TEXT,
            nullifier_height BLOB,
            created_at INTEGER NOT NULL,
            submitted_at INTEGER
        )
    """),
    ("output_notes", """
        CREATE TABLE IF NOT EXISTS output_notes (
            note_id TEXT PRIMARY KEY,
            assets BLOB NOT NULL,
            recipient TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('Pending', 'Committed', 'Processing', 'Consumed')),
            metadata TEXT,
            details TEXT,
            nullifier TEXT,
            script_hash TEXT,
            inclusion_proof BLOB,
            consumer_transaction_id TEXT,
            nullifier_height BLOB,
            created_at INTEGER NOT NULL,
            submitted_at INTEGER
        )
    """),

    # Transactions
    ("transactions", """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            account_id BLOB NOT NULL,
            init_account_state BLOB NOT NULL,
            final_account_state BLOB NOT NULL,
            input_notes BLOB,
            output_notes BLOB,
            script_hash TEXT,
            script_inputs BLOB,
            block_num BLOB NOT NULL,
            commit_height BLOB
        )
    """),

    # Chain data
    ("state_sync", """
        CREATE TABLE IF NOT EXISTS state_sync (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            block_num BLOB NOT NULL,
            tags TEXT NOT NULL
        )
    """),
    ("block_headers", """
        CREATE TABLE IF NOT EXISTS block_headers (
            block_num BLOB PRIMARY KEY,
            header BLOB NOT NULL,
            chain_mmr_peaks BLOB NOT NULL,
            has_client_notes INTEGER NOT NULL
        )
    """),
    ("chain_mmr_nodes", """
        CREATE TABLE IF NOT EXISTS chain_mmr_nodes (
            id BLOB PRIMARY KEY,
            node BLOB NOT NULL
        )
    """),
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_account_auth_pub_key ON account_auth(pub_key);",
    "CREATE INDEX IF NOT EXISTS idx_input_notes_status ON input_notes(status);",
    "CREATE INDEX IF NOT EXISTS idx_input_notes_nullifier ON input_notes(nullifier);",
    "CREATE INDEX IF NOT EXISTS idx_output_notes_status ON output_notes(status);",
    "CREATE INDEX IF NOT EXISTS idx_output_notes_nullifier ON output_notes(nullifier);",
    "CREATE INDEX IF NOT EXISTS idx_tx_commit_height ON transactions(commit_height);",
    "CREATE INDEX IF NOT EXISTS idx_block_headers_client ON block_headers(has_client_notes);",
]

TABLE_NAMES = [name for name, _ in SCHEMA]


class SQLiteAdapter:
    """
    SQLite backend for the light client store.

    Provides:
    1. One connection per thread (WAL mode, so readers never block the writer).
    2. Write transactions (`transaction()`) that are all-or-nothing.
    3. Read transactions (`snapshot()`) that never observe a half-applied write.

    Scopes nest: a store operation that opens `transaction()` while another
    one is already open on the same thread joins the outer transaction.

    With `trace_sql`, every statement run on any connection is logged at
    DEBUG on the `lcstore.sql` logger.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0, trace_sql: bool = False):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.trace_sql = trace_sql
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._generation = 0
        self._sql_logger = StoreLogger.get_sql_logger()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        conn = getattr(self._local, "conn", None)
        if conn is not None and self._local.generation != self._generation:
            # Closed by close() on another thread
            conn = self._local.conn = None
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=self.timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                if self.trace_sql:
                    conn.set_trace_callback(self._trace)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.Error as e:
                raise StorageFailureError(f"Cannot open database at {self.db_path}: {e}") from e
            with self._conns_lock:
                self._conns.append(conn)
                self._local.generation = self._generation
            self._local.conn = conn
            self._local.depth = 0
        return conn

    def _trace(self, statement: str):
        self._sql_logger.debug(f"[{threading.current_thread().name}] {statement.strip()}")

    def _init_schema(self):
        """Initialize database schema and the singleton sync row."""
        with self.transaction() as conn:
            for _, ddl in SCHEMA:
                conn.execute(ddl)
            for ddl in INDEXES:
                conn.execute(ddl)

            row = conn.execute(
                "SELECT 1 FROM state_sync WHERE id = ?", (SYNC_STATE_ID,)
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO state_sync (id, block_num, tags) VALUES (?, ?, ?)",
                    (SYNC_STATE_ID, u64_to_db(0), "[]"),
                )
                logger.info(f"Initialized store schema at {self.db_path}")

    # =========================================================================
    # Transaction Scopes
    # =========================================================================

    @contextmanager
    def _scope(self, begin: str) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        try:
            conn.execute(begin)
        except sqlite3.Error as e:
            raise StorageFailureError(f"Cannot begin transaction: {e}") from e

        self._local.depth = 1
        try:
            yield conn
        except sqlite3.Error as e:
            self._rollback(conn)
            raise StorageFailureError(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageFailureError(f"Commit failed: {e}") from e
        finally:
            self._local.depth = 0

    @staticmethod
    def _rollback(conn: sqlite3.Connection):
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def transaction(self):
        """Write transaction. Takes the write lock up front."""
        return self._scope("BEGIN IMMEDIATE")

    def snapshot(self):
        """Read transaction with a stable view of the database."""
        return self._scope("BEGIN")

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def table_names(self) -> List[str]:
        return list(TABLE_NAMES)

    def close(self):
        """
        Close every connection the adapter opened, on any thread.

        Threads that touch the adapter afterwards get a fresh connection.
        """
        with self._conns_lock:
            conns, self._conns = self._conns, []
            self._generation += 1
        for conn in conns:
            conn.close()
        self._local.conn = None
        self._local.depth = 0

    @property
    def open_connections(self) -> int:
        with self._conns_lock:
            return len(self._conns)
