"""
Store export and import.

The dump is a JSON object mapping table name to a list of row objects.
BLOB values are written as {"__type": "Blob", "data": <base64>} so that the
dump round-trips through plain JSON.
"""

import base64
import json
from typing import Any, Dict, List

from lcstore.core.errors import InvariantViolationError
from lcstore.core.storage.sqlite_adapter import SYNC_STATE_ID, SQLiteAdapter, u64_to_db
from lcstore.utils.logger import get_logger

logger = get_logger("storage.export")

BLOB_TYPE = "Blob"


def _encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"__type": BLOB_TYPE, "data": base64.b64encode(bytes(value)).decode("ascii")}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and value.get("__type") == BLOB_TYPE:
        return base64.b64decode(value["data"])
    return value


def _table_columns(conn, table: str) -> List[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def export_store(adapter: SQLiteAdapter) -> str:
    """Dump every table of the store as a JSON string."""
    dump: Dict[str, List[Dict[str, Any]]] = {}
    with adapter.snapshot() as conn:
        for table in adapter.table_names():
            rows = conn.execute(f"SELECT * FROM {table} ORDER BY rowid").fetchall()
            dump[table] = [
                {key: _encode_value(row[key]) for key in row.keys()} for row in rows
            ]

    logger.info(f"Exported {sum(len(rows) for rows in dump.values())} rows")
    return json.dumps(dump)


def import_store(adapter: SQLiteAdapter, json_str: str) -> int:
    """
    Replace the whole store with a dump produced by export_store.

    Every table is cleared and reloaded in one write transaction. Tables the
    schema does not know are skipped with a warning, as are unknown columns.

    Returns:
        Number of rows imported

    Raises:
        InvariantViolationError: if the dump holds no tables
    """
    dump = json.loads(json_str)
    if isinstance(dump, str):
        dump = json.loads(dump)
    if not isinstance(dump, dict) or not dump:
        raise InvariantViolationError("No tables found in the provided dump")

    known = adapter.table_names()
    imported = 0
    with adapter.transaction() as conn:
        for table in known:
            conn.execute(f"DELETE FROM {table}")

        for table, rows in dump.items():
            if table not in known:
                logger.warning(f"Table {table!r} is not part of the store schema, skipping")
                continue

            columns = set(_table_columns(conn, table))
            for row in rows:
                values = {}
                for key, value in row.items():
                    if key not in columns:
                        logger.warning(f"{table}: unknown column {key!r}, skipping")
                        continue
                    values[key] = _decode_value(value)
                if not values:
                    continue
                names = list(values)
                placeholders = ",".join("?" for _ in names)
                conn.execute(
                    f"INSERT OR REPLACE INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                    [values[name] for name in names],
                )
                imported += 1

        row = conn.execute(
            "SELECT 1 FROM state_sync WHERE id = ?", (SYNC_STATE_ID,)
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO state_sync (id, block_num, tags) VALUES (?, ?, ?)",
                (SYNC_STATE_ID, u64_to_db(0), "[]"),
            )

    logger.info(f"Imported {imported} rows")
    return imported
