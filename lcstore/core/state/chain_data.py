"""
Chain Store - block headers, chain MMR nodes and the sync-state row.

Block headers and MMR nodes are only ever appended. Re-inserting an identical
row is accepted as a no-op so that a replayed sync batch is harmless; a
different payload under an existing key is a DuplicateKeyError.

The sync state is a single row (id = 1) holding the block-number cursor of
the last applied sync batch and the set of note tags the client listens to.
"""

import json
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from lcstore.core.errors import DuplicateKeyError, InvariantViolationError, NotFoundError
from lcstore.core.storage.sqlite_adapter import (
    SYNC_STATE_ID,
    SQLiteAdapter,
    u64_from_db,
    u64_to_db,
)
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import (
    parse_u64,
    validate_bytes,
    validate_note_tag,
    validate_parallel_arrays,
)

logger = get_logger("state.chain_data")


@dataclass(frozen=True)
class BlockHeaderRecord:
    """
    A block header tracked by the client.

    Attributes:
        block_num: Block number (u64)
        header: Serialized header (opaque)
        chain_mmr_peaks: Serialized MMR peaks at this block (opaque)
        has_client_notes: Whether the block carries notes relevant to the client
    """
    block_num: int
    header: bytes
    chain_mmr_peaks: bytes
    has_client_notes: bool

    def __post_init__(self):
        object.__setattr__(self, "block_num", parse_u64(self.block_num, "block_num"))
        for name in ("header", "chain_mmr_peaks"):
            valid, err = validate_bytes(getattr(self, name), name)
            if not valid:
                raise ValueError(err)
            object.__setattr__(self, name, bytes(getattr(self, name)))
        object.__setattr__(self, "has_client_notes", bool(self.has_client_notes))


def _header_from_row(row: sqlite3.Row) -> BlockHeaderRecord:
    return BlockHeaderRecord(
        block_num=u64_from_db(row["block_num"]),
        header=row["header"],
        chain_mmr_peaks=row["chain_mmr_peaks"],
        has_client_notes=bool(row["has_client_notes"]),
    )


class ChainStore:
    """
    Block headers, MMR nodes and the sync cursor.
    """

    def __init__(self, adapter: SQLiteAdapter):
        self.adapter = adapter

    # =========================================================================
    # Block Headers
    # =========================================================================

    def insert_block_header(
        self,
        block_num: int,
        header: bytes,
        chain_mmr_peaks: bytes,
        has_client_notes: bool,
    ) -> bool:
        """
        Store a block header.

        Returns:
            True if a row was written, False if the identical header was
            already stored

        Raises:
            DuplicateKeyError: if a different header exists for block_num
        """
        record = BlockHeaderRecord(block_num, header, chain_mmr_peaks, has_client_notes)
        key = u64_to_db(record.block_num)

        with self.adapter.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM block_headers WHERE block_num = ?", (key,)
            ).fetchone()
            if row is not None:
                if _header_from_row(row) != record:
                    raise DuplicateKeyError(
                        f"Block header {record.block_num} already stored with different content"
                    )
                logger.debug(f"Block header {record.block_num} already present, skipping")
                return False

            conn.execute(
                """
                INSERT INTO block_headers (block_num, header, chain_mmr_peaks, has_client_notes)
                VALUES (?, ?, ?, ?)
                """,
                (key, record.header, record.chain_mmr_peaks, int(record.has_client_notes)),
            )
        return True

    def get_block_headers(
        self, block_nums: Iterable[int]
    ) -> List[Optional[BlockHeaderRecord]]:
        """
        Batch header lookup in input order. Unknown blocks map to None.
        """
        wanted = [parse_u64(n, "block_num") for n in block_nums]
        if not wanted:
            return []

        keys = sorted({u64_to_db(n) for n in wanted})
        placeholders = ",".join("?" for _ in keys)
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                f"SELECT * FROM block_headers WHERE block_num IN ({placeholders})", keys
            ).fetchall()

        found = {u64_from_db(row["block_num"]): _header_from_row(row) for row in rows}
        return [found.get(n) for n in wanted]

    def get_block_header(self, block_num: int) -> BlockHeaderRecord:
        """
        Raises:
            NotFoundError: if the block header is not stored
        """
        header = self.get_block_headers([block_num])[0]
        if header is None:
            raise NotFoundError(f"No block header for block {block_num}")
        return header

    def get_tracked_block_headers(self) -> List[BlockHeaderRecord]:
        """Headers of blocks that carry notes relevant to the client."""
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                "SELECT * FROM block_headers WHERE has_client_notes = 1 ORDER BY block_num"
            ).fetchall()
        return [_header_from_row(row) for row in rows]

    def get_chain_mmr_peaks(self, block_num: int) -> bytes:
        """
        Raises:
            NotFoundError: if the block header is not stored
        """
        return self.get_block_header(block_num).chain_mmr_peaks

    # =========================================================================
    # Chain MMR Nodes
    # =========================================================================

    def insert_chain_mmr_nodes(self, ids: Sequence[int], nodes: Sequence[bytes]) -> int:
        """
        Bulk-insert MMR nodes keyed by their in-order index.

        Returns:
            Number of new rows written

        Raises:
            InvariantViolationError: if ids and nodes differ in length
            DuplicateKeyError: if an index is already stored with another node
        """
        valid, err = validate_parallel_arrays({"node_indices": ids, "nodes": nodes})
        if not valid:
            raise InvariantViolationError(err)
        if not ids:
            return 0

        written = 0
        with self.adapter.transaction() as conn:
            for node_id, node in zip(ids, nodes):
                node_id = parse_u64(node_id, "node_index")
                valid, err = validate_bytes(node, "node")
                if not valid:
                    raise ValueError(err)
                node = bytes(node)
                key = u64_to_db(node_id)

                row = conn.execute(
                    "SELECT node FROM chain_mmr_nodes WHERE id = ?", (key,)
                ).fetchone()
                if row is not None:
                    if row["node"] != node:
                        raise DuplicateKeyError(
                            f"MMR node {node_id} already stored with a different value"
                        )
                    continue

                conn.execute("INSERT INTO chain_mmr_nodes (id, node) VALUES (?, ?)", (key, node))
                written += 1
        return written

    def get_chain_mmr_nodes(self, ids: Iterable[int]) -> Dict[int, bytes]:
        """Batch node lookup. Unknown indices are absent from the result."""
        keys = sorted({u64_to_db(parse_u64(i, "node_index")) for i in ids})
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                f"SELECT id, node FROM chain_mmr_nodes WHERE id IN ({placeholders})", keys
            ).fetchall()
        return {u64_from_db(row["id"]): row["node"] for row in rows}

    def get_chain_mmr_nodes_all(self) -> Dict[int, bytes]:
        with self.adapter.snapshot() as conn:
            rows = conn.execute("SELECT id, node FROM chain_mmr_nodes ORDER BY id").fetchall()
        return {u64_from_db(row["id"]): row["node"] for row in rows}

    # =========================================================================
    # Sync State
    # =========================================================================

    def _sync_row(self, conn: sqlite3.Connection) -> sqlite3.Row:
        row = conn.execute(
            "SELECT block_num, tags FROM state_sync WHERE id = ?", (SYNC_STATE_ID,)
        ).fetchone()
        if row is None:
            raise InvariantViolationError("Sync state row is missing")
        return row

    def get_sync_height(self) -> int:
        """Block number of the last applied sync batch."""
        with self.adapter.snapshot() as conn:
            return u64_from_db(self._sync_row(conn)["block_num"])

    def set_sync_height(self, block_num: int) -> int:
        """
        Move the sync cursor. Joins the caller's transaction when there is one.

        Returns:
            The previous cursor value

        Raises:
            InvariantViolationError: if block_num is below the current cursor
        """
        block_num = parse_u64(block_num, "block_num")
        with self.adapter.transaction() as conn:
            current = u64_from_db(self._sync_row(conn)["block_num"])
            if block_num < current:
                raise InvariantViolationError(
                    f"Sync cursor cannot move backwards ({current} -> {block_num})"
                )
            conn.execute(
                "UPDATE state_sync SET block_num = ? WHERE id = ?",
                (u64_to_db(block_num), SYNC_STATE_ID),
            )
        return current

    def get_note_tags(self) -> List[int]:
        with self.adapter.snapshot() as conn:
            return json.loads(self._sync_row(conn)["tags"])

    def add_note_tag(self, tags: Iterable[int]) -> List[int]:
        """
        Replace the tracked tag set with `tags`.

        Despite the name this is not additive: the stored set becomes exactly
        the given tags (duplicates dropped, first occurrence order kept).
        """
        clean: List[int] = []
        for tag in tags:
            valid, err = validate_note_tag(tag)
            if not valid:
                raise ValueError(err)
            if tag not in clean:
                clean.append(tag)

        with self.adapter.transaction() as conn:
            self._sync_row(conn)
            conn.execute(
                "UPDATE state_sync SET tags = ? WHERE id = ?",
                (json.dumps(clean), SYNC_STATE_ID),
            )
        logger.debug(f"Note tags set to {clean}")
        return clean
