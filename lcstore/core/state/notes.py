"""
Note Store - input and output note lifecycle for the light client.

Note Lifecycle:
--------------
1. Pending     created locally or imported, not yet seen on chain
2. Committed   an inclusion proof arrived in a sync batch
3. Processing  selected as input of a local transaction not yet confirmed
4. Consumed    the note's nullifier was observed on chain (terminal)

Statuses only move forward: Pending -> Committed/Processing -> Consumed,
plus Committed -> Processing. Nothing leaves Consumed.

Details:
-------
`details` is the JSON handed over by the VM layer. The store only reads two
fields from it: `nullifier` (used to detect consumption, mirrored into an
indexed column) and the optional `script_hash` (a reference into the
note_scripts table). Any other field is kept verbatim.

Reads:
-----
Query results are NoteView projections: the stored row plus the resolved
script payload and the account id of the consuming transaction. The
resolution is done by the separate helpers at the bottom of this module and
never writes back to the note tables.
"""

import json
import sqlite3
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict

from lcstore.core.errors import DuplicateKeyError, InvariantViolationError, NotFoundError
from lcstore.core.storage.blob_tables import BlobTables, fetch_payloads
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter, u64_from_db, u64_to_db
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import parse_u64, validate_bytes

logger = get_logger("state.notes")

INPUT_NOTES = "input_notes"
OUTPUT_NOTES = "output_notes"
NOTE_TABLES = (INPUT_NOTES, OUTPUT_NOTES)


# =============================================================================
# Status
# =============================================================================


class NoteStatus(str, Enum):
    """Lifecycle state of a note."""
    PENDING = "Pending"
    COMMITTED = "Committed"
    PROCESSING = "Processing"
    CONSUMED = "Consumed"


class NoteFilter(str, Enum):
    """Query filter that matches every status."""
    ALL = "All"


ALLOWED_TRANSITIONS = {
    NoteStatus.PENDING: {NoteStatus.COMMITTED, NoteStatus.PROCESSING, NoteStatus.CONSUMED},
    NoteStatus.COMMITTED: {NoteStatus.PROCESSING, NoteStatus.CONSUMED},
    NoteStatus.PROCESSING: {NoteStatus.CONSUMED},
    NoteStatus.CONSUMED: set(),
}

UNSPENT_STATUSES = (NoteStatus.COMMITTED, NoteStatus.PROCESSING)


def check_transition(note_id: str, current: NoteStatus, target: NoteStatus):
    """
    Raises:
        InvariantViolationError: if current -> target moves backwards or
            leaves the terminal state. Staying in place is allowed.
    """
    if current == target and current != NoteStatus.CONSUMED:
        return
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvariantViolationError(
            f"Note {note_id}: illegal status transition {current.value} -> {target.value}"
        )


def parse_note_filter(value: Union[NoteStatus, NoteFilter, str]) -> Optional[NoteStatus]:
    """Map a filter argument to a status, or None for 'All'."""
    if isinstance(value, NoteFilter):
        return None
    if isinstance(value, NoteStatus):
        return value
    if isinstance(value, str):
        if value.lower() == NoteFilter.ALL.value.lower():
            return None
        for status in NoteStatus:
            if status.value.lower() == value.lower():
                return status
    raise ValueError(f"Unknown note filter: {value!r}")


# =============================================================================
# Records
# =============================================================================


class NoteDetails(BaseModel):
    """
    Structured view of a note's `details` JSON.

    Unknown fields are preserved so details written by a newer VM layer
    round-trip untouched.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    nullifier: str
    script_hash: Optional[str] = None

    @classmethod
    def parse(cls, value: Union["NoteDetails", Dict[str, Any], str, bytes]) -> "NoteDetails":
        if isinstance(value, NoteDetails):
            return value
        if isinstance(value, (str, bytes)):
            return cls.model_validate_json(value)
        return cls.model_validate(value)

    def to_json(self) -> str:
        return self.model_dump_json()


def _metadata_to_db(metadata: Any) -> Optional[str]:
    if metadata is None:
        return None
    if isinstance(metadata, (str, bytes)):
        # Already JSON; parse to reject garbage before it is stored
        return json.dumps(json.loads(metadata))
    return json.dumps(metadata)


def _metadata_from_db(text: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(text) if text is not None else None


def _parse_metadata(metadata: Any) -> Optional[Dict[str, Any]]:
    return _metadata_from_db(_metadata_to_db(metadata))


def _opaque_bytes(value: Optional[bytes], name: str) -> Optional[bytes]:
    if value is None:
        return None
    valid, err = validate_bytes(value, name)
    if not valid:
        raise ValueError(err)
    return bytes(value)


@dataclass(frozen=True)
class NoteRecord:
    """
    A stored note (input or output).

    Attributes:
        note_id: Note id (hex digest)
        assets: Serialized note assets (opaque)
        recipient: Recipient digest
        status: Lifecycle state
        details: Parsed details; None only for output notes whose secrets
            are unknown to this client
        metadata: Note metadata JSON, known once the note is on chain
        inclusion_proof: Serialized inclusion proof (opaque)
        consumer_transaction_id: Local transaction consuming this note
        nullifier_height: Block at which the nullifier appeared
        created_at: Unix timestamp of insertion
        submitted_at: Unix timestamp of submission of the consuming transaction
    """
    note_id: str
    assets: bytes
    recipient: str
    status: NoteStatus
    details: Optional[NoteDetails]
    metadata: Optional[Dict[str, Any]] = None
    inclusion_proof: Optional[bytes] = None
    consumer_transaction_id: Optional[str] = None
    nullifier_height: Optional[int] = None
    created_at: int = 0
    submitted_at: Optional[int] = None

    @property
    def nullifier(self) -> Optional[str]:
        return self.details.nullifier if self.details else None

    @property
    def script_hash(self) -> Optional[str]:
        return self.details.script_hash if self.details else None


@dataclass(frozen=True)
class NoteView:
    """Read-only projection of a note with its joined data."""
    note: NoteRecord
    script: Optional[bytes] = None
    consumer_account_id: Optional[int] = None

    @property
    def note_id(self) -> str:
        return self.note.note_id

    @property
    def status(self) -> NoteStatus:
        return self.note.status

    @property
    def nullifier(self) -> Optional[str]:
        return self.note.nullifier


def build_note_record(
    note_id, assets, recipient, details, status, metadata, inclusion_proof, created_at
) -> NoteRecord:
    """Normalize note fields into a NoteRecord."""
    if not isinstance(note_id, str) or not note_id:
        raise ValueError("note_id must be a non-empty str")
    if not isinstance(recipient, str):
        raise ValueError("recipient must be str")
    return NoteRecord(
        note_id=note_id,
        assets=_opaque_bytes(assets, "assets"),
        recipient=recipient,
        status=NoteStatus(status),
        details=NoteDetails.parse(details) if details is not None else None,
        metadata=_parse_metadata(metadata),
        inclusion_proof=_opaque_bytes(inclusion_proof, "inclusion_proof"),
        created_at=int(time.time()) if created_at is None else int(created_at),
    )


@dataclass(frozen=True)
class NewNote:
    """A note to be written together with its optional script payload."""
    record: NoteRecord
    script: Optional[bytes] = None

    @classmethod
    def create(
        cls,
        note_id: str,
        assets: bytes,
        recipient: str,
        details: Optional[Union[NoteDetails, Dict[str, Any], str]],
        status: NoteStatus = NoteStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        inclusion_proof: Optional[bytes] = None,
        script: Optional[bytes] = None,
        created_at: Optional[int] = None,
    ) -> "NewNote":
        record = build_note_record(
            note_id, assets, recipient, details, status, metadata, inclusion_proof, created_at
        )
        return cls(record=record, script=script)


def _note_from_row(row: sqlite3.Row) -> NoteRecord:
    details = NoteDetails.parse(row["details"]) if row["details"] is not None else None
    return NoteRecord(
        note_id=row["note_id"],
        assets=row["assets"],
        recipient=row["recipient"],
        status=NoteStatus(row["status"]),
        details=details,
        metadata=_metadata_from_db(row["metadata"]),
        inclusion_proof=row["inclusion_proof"],
        consumer_transaction_id=row["consumer_transaction_id"],
        nullifier_height=u64_from_db(row["nullifier_height"]),
        created_at=row["created_at"],
        submitted_at=row["submitted_at"],
    )


# =============================================================================
# Note Store
# =============================================================================


class NoteStore:
    """
    Input and output notes, and the note scripts they reference.
    """

    def __init__(self, adapter: SQLiteAdapter, blobs: BlobTables):
        self.adapter = adapter
        self.blobs = blobs

    # =========================================================================
    # Inserts
    # =========================================================================

    def insert_input_note(
        self,
        note_id: str,
        assets: bytes,
        recipient: str,
        details: Union[NoteDetails, Dict[str, Any], str],
        status: NoteStatus = NoteStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        inclusion_proof: Optional[bytes] = None,
        script: Optional[bytes] = None,
        created_at: Optional[int] = None,
    ) -> NoteRecord:
        """
        Insert an input note and, atomically, the note script it references.

        Raises:
            DuplicateKeyError: if the note id is already stored, or the
                script hash is stored with a different payload
        """
        if details is None:
            raise ValueError("Input notes require details")
        record = build_note_record(
            note_id, assets, recipient, details, status, metadata, inclusion_proof, created_at
        )
        self._insert_note(INPUT_NOTES, record, script)
        return record

    def insert_output_note(
        self,
        note_id: str,
        assets: bytes,
        recipient: str,
        details: Optional[Union[NoteDetails, Dict[str, Any], str]] = None,
        status: NoteStatus = NoteStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        inclusion_proof: Optional[bytes] = None,
        script: Optional[bytes] = None,
        created_at: Optional[int] = None,
    ) -> NoteRecord:
        """Insert an output note; same atomicity as insert_input_note."""
        record = build_note_record(
            note_id, assets, recipient, details, status, metadata, inclusion_proof, created_at
        )
        self._insert_note(OUTPUT_NOTES, record, script)
        return record

    def insert_new_note(self, table: str, note: NewNote) -> NoteRecord:
        """
        Insert a prepared note into `table`. Joins the caller's transaction
        when there is one.
        """
        if table not in NOTE_TABLES:
            raise ValueError(f"Unknown note table: {table}")
        if table == INPUT_NOTES and note.record.details is None:
            raise ValueError("Input notes require details")
        self._insert_note(table, note.record, note.script)
        return note.record

    def _insert_note(self, table: str, record: NoteRecord, script: Optional[bytes]):
        if script is not None and record.script_hash is None:
            raise ValueError(f"Note {record.note_id}: script given but details carry no script_hash")

        with self.adapter.transaction() as conn:
            try:
                conn.execute(
                    f"""
                    INSERT INTO {table}
                        (note_id, assets, recipient, status, metadata, details, nullifier,
                         script_hash, inclusion_proof, consumer_transaction_id,
                         nullifier_height, created_at, submitted_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, NULL)
                    """,
                    (
                        record.note_id,
                        record.assets,
                        record.recipient,
                        record.status.value,
                        _metadata_to_db(record.metadata),
                        record.details.to_json() if record.details else None,
                        record.nullifier,
                        record.script_hash,
                        record.inclusion_proof,
                        record.created_at,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"{table}: note {record.note_id} already stored") from e

            if script is not None:
                self.blobs.note_scripts.put(record.script_hash, script)

        logger.debug(f"Inserted {table} note {record.note_id} ({record.status.value})")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_input_notes(
        self, note_filter: Union[NoteStatus, NoteFilter, str] = NoteFilter.ALL
    ) -> List[NoteView]:
        return self._get_notes(INPUT_NOTES, note_filter)

    def get_output_notes(
        self, note_filter: Union[NoteStatus, NoteFilter, str] = NoteFilter.ALL
    ) -> List[NoteView]:
        return self._get_notes(OUTPUT_NOTES, note_filter)

    def get_input_notes_by_ids(self, note_ids: Sequence[str]) -> List[NoteView]:
        return self._get_notes_by_ids(INPUT_NOTES, note_ids)

    def get_output_notes_by_ids(self, note_ids: Sequence[str]) -> List[NoteView]:
        return self._get_notes_by_ids(OUTPUT_NOTES, note_ids)

    def get_input_note(self, note_id: str) -> NoteView:
        """
        Raises:
            NotFoundError: if no input note has this id
        """
        notes = self._get_notes_by_ids(INPUT_NOTES, [note_id])
        if not notes:
            raise NotFoundError(f"No input note {note_id}")
        return notes[0]

    def get_note_script(self, script_hash: str) -> bytes:
        return self.blobs.note_scripts.get(script_hash)

    def _get_notes(self, table: str, note_filter) -> List[NoteView]:
        status = parse_note_filter(note_filter)
        with self.adapter.snapshot() as conn:
            if status is None:
                rows = conn.execute(f"SELECT * FROM {table} ORDER BY rowid").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE status = ? ORDER BY rowid",
                    (status.value,),
                ).fetchall()
            return enrich_notes(self.adapter, [_note_from_row(row) for row in rows])

    def _get_notes_by_ids(self, table: str, note_ids: Sequence[str]) -> List[NoteView]:
        ids = list(dict.fromkeys(note_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE note_id IN ({placeholders})", ids
            ).fetchall()
            by_id = {row["note_id"]: _note_from_row(row) for row in rows}
            records = [by_id[note_id] for note_id in ids if note_id in by_id]
            return enrich_notes(self.adapter, records)

    def get_unspent_nullifiers(self) -> List[str]:
        """
        Nullifiers of every note that can still be spent (Committed or
        Processing), across input and output notes.
        """
        statuses = [s.value for s in UNSPENT_STATUSES]
        nullifiers: List[str] = []
        with self.adapter.snapshot() as conn:
            for table in NOTE_TABLES:
                rows = conn.execute(
                    f"""
                    SELECT nullifier FROM {table}
                    WHERE status IN (?, ?) AND nullifier IS NOT NULL
                    ORDER BY rowid
                    """,
                    statuses,
                ).fetchall()
                nullifiers.extend(row["nullifier"] for row in rows)
        return list(dict.fromkeys(nullifiers))

    # =========================================================================
    # Local Updates
    # =========================================================================

    def mark_consumer_transaction(
        self,
        note_id: str,
        transaction_id: str,
        submitted_at: Optional[int] = None,
    ) -> int:
        """
        Record the local transaction consuming a note and move it to Processing.

        Both note tables are checked.

        Returns:
            Number of rows updated

        Raises:
            NotFoundError: if neither table holds the note
            InvariantViolationError: if the note is already Consumed, or is
                already being consumed by a different transaction
        """
        submitted_at = int(time.time()) if submitted_at is None else int(submitted_at)
        updated = 0
        with self.adapter.transaction() as conn:
            for table in NOTE_TABLES:
                row = conn.execute(
                    f"SELECT status, consumer_transaction_id FROM {table} WHERE note_id = ?",
                    (note_id,),
                ).fetchone()
                if row is None:
                    continue
                check_transition(note_id, NoteStatus(row["status"]), NoteStatus.PROCESSING)
                current_consumer = row["consumer_transaction_id"]
                if current_consumer is not None and current_consumer != transaction_id:
                    raise InvariantViolationError(
                        f"Note {note_id} is already consumed by transaction {current_consumer}"
                    )
                conn.execute(
                    f"""
                    UPDATE {table}
                    SET consumer_transaction_id = ?, submitted_at = ?, status = ?
                    WHERE note_id = ?
                    """,
                    (transaction_id, submitted_at, NoteStatus.PROCESSING.value, note_id),
                )
                updated += 1

            if updated == 0:
                raise NotFoundError(f"No note {note_id}")
        return updated

    # =========================================================================
    # Sync Updates (joined into the caller's transaction)
    # =========================================================================

    def mark_consumed_by_nullifiers(
        self,
        nullifiers: Sequence[str],
        block_nums: Sequence[int],
    ) -> int:
        """
        Move every note whose nullifier appears in `nullifiers` to Consumed and
        record the block number at the matching index.

        Notes already Consumed keep their original nullifier height.

        Returns:
            Number of notes updated
        """
        if not nullifiers:
            return 0

        heights: Dict[str, int] = {}
        for nullifier, block_num in zip(nullifiers, block_nums):
            heights.setdefault(nullifier, parse_u64(block_num, "nullifier_block_num"))

        wanted = list(heights)
        placeholders = ",".join("?" for _ in wanted)
        updated = 0
        with self.adapter.transaction() as conn:
            for table in NOTE_TABLES:
                rows = conn.execute(
                    f"SELECT note_id, status, nullifier FROM {table} WHERE nullifier IN ({placeholders})",
                    wanted,
                ).fetchall()
                for row in rows:
                    if NoteStatus(row["status"]) == NoteStatus.CONSUMED:
                        continue
                    conn.execute(
                        f"UPDATE {table} SET status = ?, nullifier_height = ? WHERE note_id = ?",
                        (
                            NoteStatus.CONSUMED.value,
                            u64_to_db(heights[row["nullifier"]]),
                            row["note_id"],
                        ),
                    )
                    updated += 1
        return updated

    def mark_committed(
        self,
        table: str,
        note_ids: Sequence[str],
        inclusion_proofs: Sequence[bytes],
        metadatas: Optional[Sequence[Any]] = None,
    ) -> int:
        """
        Attach inclusion proofs (and metadata) to notes seen on chain.

        Pending notes become Committed. Processing and Consumed notes get the
        proof but keep their status, since statuses never move backwards.
        Ids unknown to the table are skipped.

        Returns:
            Number of notes updated
        """
        if table not in NOTE_TABLES:
            raise ValueError(f"Unknown note table: {table}")

        updated = 0
        with self.adapter.transaction() as conn:
            for i, note_id in enumerate(note_ids):
                row = conn.execute(
                    f"SELECT status FROM {table} WHERE note_id = ?", (note_id,)
                ).fetchone()
                if row is None:
                    logger.debug(f"{table}: committed note {note_id} not tracked, skipping")
                    continue

                current = NoteStatus(row["status"])
                status = NoteStatus.COMMITTED if current == NoteStatus.PENDING else current
                proof = _opaque_bytes(inclusion_proofs[i], "inclusion_proof")

                if metadatas is None:
                    conn.execute(
                        f"UPDATE {table} SET status = ?, inclusion_proof = ? WHERE note_id = ?",
                        (status.value, proof, note_id),
                    )
                else:
                    conn.execute(
                        f"""
                        UPDATE {table} SET status = ?, inclusion_proof = ?, metadata = ?
                        WHERE note_id = ?
                        """,
                        (status.value, proof, _metadata_to_db(metadatas[i]), note_id),
                    )
                updated += 1
        return updated


# =============================================================================
# Read Helpers
# =============================================================================


def resolve_note_scripts(adapter: SQLiteAdapter, records: Iterable[NoteRecord]) -> Dict[str, bytes]:
    """Script payloads for the script hashes referenced by `records`."""
    return fetch_payloads(
        adapter, "note_scripts", "script_hash", (r.script_hash for r in records)
    )


def resolve_consumer_accounts(adapter: SQLiteAdapter, records: Iterable[NoteRecord]) -> Dict[str, int]:
    """Account id of each consuming transaction referenced by `records`."""
    tx_ids = sorted({r.consumer_transaction_id for r in records if r.consumer_transaction_id})
    if not tx_ids:
        return {}
    placeholders = ",".join("?" for _ in tx_ids)
    with adapter.snapshot() as conn:
        rows = conn.execute(
            f"SELECT id, account_id FROM transactions WHERE id IN ({placeholders})", tx_ids
        ).fetchall()
    return {row["id"]: u64_from_db(row["account_id"]) for row in rows}


def enrich_notes(adapter: SQLiteAdapter, records: List[NoteRecord]) -> List[NoteView]:
    """Compose the read helpers into NoteView projections."""
    scripts = resolve_note_scripts(adapter, records)
    consumers = resolve_consumer_accounts(adapter, records)
    return [
        NoteView(
            note=record,
            script=scripts.get(record.script_hash) if record.script_hash else None,
            consumer_account_id=consumers.get(record.consumer_transaction_id),
        )
        for record in records
    ]
