"""
Content-Addressed Blob Tables.

Append-only tables keyed by a content hash ("root"). A root is a digest of
its payload, so a row is immutable once written and shared by every record
that references it. Writes are idempotent: putting an existing root again is
a no-op.

Tables:
- account_code, account_storage, account_vaults (strict)
- note_scripts (strict)
- transaction_scripts (lenient: any existing hash is success)
"""

import sqlite3
from typing import Dict, Iterable, Optional

from lcstore.core.errors import DuplicateKeyError, NotFoundError
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import validate_bytes

logger = get_logger("storage.blobs")


class ContentAddressedTable:
    """
    One content-addressed table.

    Attributes:
        table: SQLite table name
        key_column: Name of the root/hash column
        strict: When True, a different payload under an existing root raises
            DuplicateKeyError. When False, the existing row always wins.
        nullable: Whether a row may be stored without a payload
    """

    def __init__(
        self,
        adapter: SQLiteAdapter,
        table: str,
        key_column: str = "root",
        strict: bool = True,
        nullable: bool = False,
    ):
        self.adapter = adapter
        self.table = table
        self.key_column = key_column
        self.strict = strict
        self.nullable = nullable

    def put(self, root: str, payload: Optional[bytes]) -> bool:
        """
        Insert a payload under its root unless the root is already stored.

        Returns:
            True if a row was written, False if the root already existed
        """
        if not isinstance(root, str) or not root:
            raise ValueError(f"{self.key_column} must be a non-empty str")
        if payload is None:
            if not self.nullable:
                raise ValueError(f"{self.table} payload must not be None")
        else:
            valid, err = validate_bytes(payload, "payload")
            if not valid:
                raise ValueError(err)
            payload = bytes(payload)

        with self.adapter.transaction() as conn:
            row = conn.execute(
                f"SELECT payload FROM {self.table} WHERE {self.key_column} = ?",
                (root,),
            ).fetchone()

            if row is not None:
                if self.strict and row["payload"] != payload:
                    raise DuplicateKeyError(
                        f"{self.table}: root {root} already stored with a different payload"
                    )
                logger.debug(f"{self.table}: {root} already present, skipping")
                return False

            try:
                conn.execute(
                    f"INSERT INTO {self.table} ({self.key_column}, payload) VALUES (?, ?)",
                    (root, payload),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"{self.table}: {root}: {e}") from e
            return True

    def get(self, root: str) -> Optional[bytes]:
        """
        Get the payload stored under a root.

        Raises:
            NotFoundError: if the root is unknown
        """
        with self.adapter.snapshot() as conn:
            row = conn.execute(
                f"SELECT payload FROM {self.table} WHERE {self.key_column} = ?",
                (root,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"{self.table}: no row for {root}")
        return row["payload"]

    def has(self, root: str) -> bool:
        with self.adapter.snapshot() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {self.table} WHERE {self.key_column} = ?",
                (root,),
            ).fetchone()
        return row is not None

    def get_many(self, roots: Iterable[str]) -> Dict[str, Optional[bytes]]:
        """Batch lookup. Unknown roots are absent from the result."""
        return fetch_payloads(self.adapter, self.table, self.key_column, roots)

    def count(self) -> int:
        with self.adapter.snapshot() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {self.table}").fetchone()
        return row["cnt"]


def fetch_payloads(
    adapter: SQLiteAdapter,
    table: str,
    key_column: str,
    roots: Iterable[str],
) -> Dict[str, Optional[bytes]]:
    """
    Resolve a set of roots to payloads in one query.

    Runs inside whatever scope the caller already holds, so read-side joins
    stay in the caller's snapshot.
    """
    wanted = sorted({r for r in roots if r is not None})
    if not wanted:
        return {}
    placeholders = ",".join("?" for _ in wanted)
    with adapter.snapshot() as conn:
        rows = conn.execute(
            f"SELECT {key_column} AS k, payload FROM {table} WHERE {key_column} IN ({placeholders})",
            wanted,
        ).fetchall()
    return {row["k"]: row["payload"] for row in rows}


class BlobTables:
    """The five content-addressed tables of the store."""

    def __init__(self, adapter: SQLiteAdapter):
        self.account_code = ContentAddressedTable(adapter, "account_code")
        self.account_storage = ContentAddressedTable(adapter, "account_storage")
        self.account_vaults = ContentAddressedTable(adapter, "account_vaults")
        self.note_scripts = ContentAddressedTable(
            adapter, "note_scripts", key_column="script_hash"
        )
        self.transaction_scripts = ContentAddressedTable(
            adapter,
            "transaction_scripts",
            key_column="script_hash",
            strict=False,
            nullable=True,
        )
