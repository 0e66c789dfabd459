"""
Unit tests for the SQLite adapter and content-addressed blob tables.

Tests cover:
1. Schema initialization and the sync singleton
2. Idempotent puts and strict conflict detection
3. Lenient transaction scripts
4. Transaction rollback and nesting
5. Connection shutdown across threads and SQL tracing
"""

import logging
import sqlite3
import threading

import pytest

from lcstore.core.errors import DuplicateKeyError, NotFoundError, StorageFailureError
from lcstore.core.storage.blob_tables import BlobTables
from lcstore.core.storage.sqlite_adapter import (
    TABLE_NAMES,
    SQLiteAdapter,
    u64_from_db,
    u64_to_db,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def adapter(tmp_path):
    """Create a fresh SQLite adapter."""
    adapter = SQLiteAdapter(tmp_path / "store.sqlite3")
    yield adapter
    adapter.close()


@pytest.fixture
def blobs(adapter):
    """Blob tables over the adapter."""
    return BlobTables(adapter)


# =============================================================================
# Adapter Tests
# =============================================================================


class TestAdapter:
    """Tests for the SQLite adapter."""

    def test_schema_created(self, adapter):
        """Every table should exist after init."""
        with adapter.snapshot() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        names = {row["name"] for row in rows}
        assert set(TABLE_NAMES) <= names

    def test_sync_singleton_initialized(self, adapter):
        """The sync row should start at block 0 with no tags."""
        with adapter.snapshot() as conn:
            rows = conn.execute("SELECT id, block_num, tags FROM state_sync").fetchall()
        assert len(rows) == 1
        assert rows[0]["id"] == 1
        assert u64_from_db(rows[0]["block_num"]) == 0
        assert rows[0]["tags"] == "[]"

    def test_reopen_keeps_single_sync_row(self, tmp_path):
        """Reopening should not add a second sync row."""
        path = tmp_path / "store.sqlite3"
        SQLiteAdapter(path).close()
        adapter = SQLiteAdapter(path)
        with adapter.snapshot() as conn:
            count = conn.execute("SELECT COUNT(*) AS cnt FROM state_sync").fetchone()["cnt"]
        assert count == 1
        adapter.close()

    def test_u64_encoding_orders_numerically(self):
        """Encoded u64 values should sort numerically."""
        assert u64_to_db(9) < u64_to_db(10)
        assert u64_to_db(255) < u64_to_db(256)
        assert u64_from_db(u64_to_db(2**64 - 1)) == 2**64 - 1
        assert u64_to_db(None) is None

    def test_rollback_on_error(self, adapter):
        """An exception should roll the transaction back."""
        with pytest.raises(RuntimeError):
            with adapter.transaction() as conn:
                conn.execute("INSERT INTO account_code (root, payload) VALUES ('r', x'00')")
                raise RuntimeError("boom")

        with adapter.snapshot() as conn:
            row = conn.execute("SELECT 1 FROM account_code WHERE root = 'r'").fetchone()
        assert row is None

    def test_sqlite_error_wrapped(self, adapter):
        """SQLite errors should surface as StorageFailureError."""
        with pytest.raises(StorageFailureError) as exc_info:
            with adapter.transaction() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    def test_nested_scope_joins_outer(self, adapter):
        """An inner scope should commit or roll back with the outer one."""
        with pytest.raises(RuntimeError):
            with adapter.transaction() as conn:
                with adapter.transaction() as inner:
                    inner.execute("INSERT INTO account_code (root, payload) VALUES ('a', x'01')")
                conn.execute("INSERT INTO account_code (root, payload) VALUES ('b', x'02')")
                raise RuntimeError("abort outer")

        with adapter.snapshot() as conn:
            count = conn.execute("SELECT COUNT(*) AS cnt FROM account_code").fetchone()["cnt"]
        assert count == 0


# =============================================================================
# Connection Tests
# =============================================================================


class TestConnections:
    """Tests for per-thread connections and their shutdown."""

    def test_close_reaches_other_threads(self, tmp_path):
        """close() should close connections opened by every thread."""
        adapter = SQLiteAdapter(tmp_path / "store.sqlite3")
        opened = []

        def worker():
            with adapter.snapshot() as conn:
                conn.execute("SELECT 1")
                opened.append(conn)

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
        assert adapter.open_connections == 2

        adapter.close()

        assert adapter.open_connections == 0
        with pytest.raises(sqlite3.ProgrammingError):
            opened[0].execute("SELECT 1")

    def test_reopens_after_close_from_another_thread(self, adapter):
        """A thread whose connection was closed elsewhere should get a new one."""
        thread = threading.Thread(target=adapter.close)
        thread.start()
        thread.join()

        with adapter.snapshot() as conn:
            assert conn.execute("SELECT COUNT(*) AS cnt FROM state_sync").fetchone()["cnt"] == 1
        assert adapter.open_connections == 1

    def test_trace_sql_logs_statements(self, tmp_path, caplog):
        """With tracing on, each statement should reach the lcstore.sql logger."""
        caplog.set_level(logging.DEBUG, logger="lcstore.sql")
        adapter = SQLiteAdapter(tmp_path / "store.sqlite3", trace_sql=True)
        try:
            with adapter.snapshot() as conn:
                conn.execute("SELECT block_num FROM state_sync")
        finally:
            adapter.close()

        statements = [r.getMessage() for r in caplog.records if r.name == "lcstore.sql"]
        assert any("SELECT block_num FROM state_sync" in s for s in statements)
        assert any("BEGIN IMMEDIATE" in s for s in statements)

    def test_trace_sql_off_by_default(self, adapter, caplog):
        """Without tracing, nothing should be logged on lcstore.sql."""
        caplog.set_level(logging.DEBUG, logger="lcstore.sql")
        with adapter.snapshot() as conn:
            conn.execute("SELECT 1")
        assert [r for r in caplog.records if r.name == "lcstore.sql"] == []


# =============================================================================
# Blob Table Tests
# =============================================================================


class TestContentAddressedTable:
    """Tests for content-addressed tables."""

    def test_put_and_get(self, blobs):
        """A stored payload should be readable by root."""
        assert blobs.account_code.put("root1", b"code")
        assert blobs.account_code.get("root1") == b"code"
        assert blobs.account_code.has("root1")

    def test_put_is_idempotent(self, blobs):
        """Storing the same payload twice should be a no-op."""
        assert blobs.account_storage.put("root1", b"storage")
        assert not blobs.account_storage.put("root1", b"storage")
        assert blobs.account_storage.count() == 1

    def test_conflicting_payload_rejected(self, blobs):
        """A different payload under a stored root should be rejected."""
        blobs.account_vaults.put("root1", b"vault-a")
        with pytest.raises(DuplicateKeyError):
            blobs.account_vaults.put("root1", b"vault-b")
        assert blobs.account_vaults.get("root1") == b"vault-a"

    def test_missing_root(self, blobs):
        """Unknown roots should raise NotFoundError."""
        with pytest.raises(NotFoundError):
            blobs.note_scripts.get("missing")
        assert not blobs.note_scripts.has("missing")

    def test_get_many_skips_unknown(self, blobs):
        """Batch reads should omit unknown roots."""
        blobs.note_scripts.put("s1", b"one")
        blobs.note_scripts.put("s2", b"two")
        assert blobs.note_scripts.get_many(["s1", "s2", "s3"]) == {"s1": b"one", "s2": b"two"}

    def test_payload_required(self, blobs):
        """Strict tables need a root and a payload."""
        with pytest.raises(ValueError):
            blobs.account_code.put("root1", None)
        with pytest.raises(ValueError):
            blobs.account_code.put("", b"code")

    def test_transaction_scripts_lenient(self, blobs):
        """Any existing script hash should count as success."""
        assert blobs.transaction_scripts.put("h1", None)
        assert not blobs.transaction_scripts.put("h1", b"different")
        assert blobs.transaction_scripts.get("h1") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
