"""
Transaction Store - locally built and proven transactions.

A transaction is recorded when the client proves it. Its `commit_height`
stays unset until a sync batch reports the transaction on chain; once set it
is never cleared. Transaction scripts are deduplicated by hash in the
transaction_scripts table.

Applying a proven transaction touches every entity at once: the record
itself, the new account state, the notes it created and the notes it
spends. apply_transaction writes all of them in a single transaction.
"""

import sqlite3
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Union

from lcstore.core.errors import DuplicateKeyError, InvariantViolationError, NotFoundError
from lcstore.core.state.accounts import AccountStore, AccountView
from lcstore.core.state.notes import INPUT_NOTES, OUTPUT_NOTES, NewNote, NoteStore
from lcstore.core.storage.blob_tables import BlobTables, fetch_payloads
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter, u64_from_db, u64_to_db
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import parse_optional_u64, parse_u64, validate_bytes

logger = get_logger("state.transactions")


class TransactionFilter(str, Enum):
    """Which transactions to return."""
    ALL = "All"
    UNCOMMITTED = "Uncommitted"


def parse_transaction_filter(value: Union[TransactionFilter, str]) -> TransactionFilter:
    if isinstance(value, TransactionFilter):
        return value
    if isinstance(value, str) and value.lower() == TransactionFilter.UNCOMMITTED.value.lower():
        return TransactionFilter.UNCOMMITTED
    return TransactionFilter.ALL


@dataclass(frozen=True)
class TransactionRecord:
    """
    A locally proven transaction.

    Attributes:
        id: Transaction id (hex digest)
        account_id: Account the transaction was executed against
        init_account_state: Account state hash before execution
        final_account_state: Account state hash after execution
        input_notes: Serialized input note references (opaque)
        output_notes: Serialized output notes (opaque)
        script_hash: Hash of the transaction script, if any
        script_inputs: Serialized script inputs (opaque)
        block_num: Block the transaction was executed against
        commit_height: Block at which the transaction was seen on chain
    """
    id: str
    account_id: int
    init_account_state: bytes
    final_account_state: bytes
    input_notes: Optional[bytes] = None
    output_notes: Optional[bytes] = None
    script_hash: Optional[str] = None
    script_inputs: Optional[bytes] = None
    block_num: int = 0
    commit_height: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise ValueError("transaction id must be a non-empty str")
        object.__setattr__(self, "account_id", parse_u64(self.account_id, "account_id"))
        object.__setattr__(self, "block_num", parse_u64(self.block_num, "block_num"))
        object.__setattr__(
            self, "commit_height", parse_optional_u64(self.commit_height, "commit_height")
        )
        for name in ("init_account_state", "final_account_state"):
            valid, err = validate_bytes(getattr(self, name), name)
            if not valid:
                raise ValueError(err)
        for name in ("input_notes", "output_notes", "script_inputs"):
            value = getattr(self, name)
            if value is not None:
                valid, err = validate_bytes(value, name)
                if not valid:
                    raise ValueError(err)

    @property
    def is_committed(self) -> bool:
        return self.commit_height is not None


@dataclass(frozen=True)
class TransactionView:
    """Read-only projection of a transaction with its script payload."""
    transaction: TransactionRecord
    script: Optional[bytes] = None

    @property
    def id(self) -> str:
        return self.transaction.id

    @property
    def commit_height(self) -> Optional[int]:
        return self.transaction.commit_height


@dataclass(frozen=True)
class TransactionResult:
    """
    Everything a proven transaction changes locally.

    Attributes:
        transaction: The proven transaction record
        account: Account state after execution, with its payloads
        script: Transaction script payload, if the record has a script_hash
        created_input_notes: Created notes the client can consume
        created_output_notes: Notes the transaction emitted
        consumed_note_ids: Input notes spent by the transaction
        submitted_at: Submission time recorded on the consumed notes
    """
    transaction: TransactionRecord
    account: AccountView
    script: Optional[bytes] = None
    created_input_notes: List[NewNote] = field(default_factory=list)
    created_output_notes: List[NewNote] = field(default_factory=list)
    consumed_note_ids: List[str] = field(default_factory=list)
    submitted_at: Optional[int] = None

    def __post_init__(self):
        if self.account.id != self.transaction.account_id:
            raise InvariantViolationError(
                f"Transaction {self.transaction.id} is for account "
                f"{self.transaction.account_id}, result carries account {self.account.id}"
            )


def _row_values(record: TransactionRecord):
    return (
        record.id,
        u64_to_db(record.account_id),
        bytes(record.init_account_state),
        bytes(record.final_account_state),
        record.input_notes,
        record.output_notes,
        record.script_hash,
        record.script_inputs,
        u64_to_db(record.block_num),
        u64_to_db(record.commit_height),
    )


def _transaction_from_row(row: sqlite3.Row) -> TransactionRecord:
    return TransactionRecord(
        id=row["id"],
        account_id=u64_from_db(row["account_id"]),
        init_account_state=row["init_account_state"],
        final_account_state=row["final_account_state"],
        input_notes=row["input_notes"],
        output_notes=row["output_notes"],
        script_hash=row["script_hash"],
        script_inputs=row["script_inputs"],
        block_num=u64_from_db(row["block_num"]),
        commit_height=u64_from_db(row["commit_height"]),
    )


class TransactionStore:
    """
    Transaction records and transaction scripts.
    """

    def __init__(
        self,
        adapter: SQLiteAdapter,
        blobs: BlobTables,
        accounts: AccountStore,
        notes: NoteStore,
    ):
        self.adapter = adapter
        self.blobs = blobs
        self.accounts = accounts
        self.notes = notes

    def insert_transaction_script(self, script_hash: str, payload: Optional[bytes] = None) -> bool:
        """
        Store a transaction script. An existing hash is always success.

        Returns:
            True if a row was written
        """
        return self.blobs.transaction_scripts.put(script_hash, payload)

    def insert_transaction(
        self,
        record: TransactionRecord,
        script: Optional[bytes] = None,
    ) -> TransactionRecord:
        """
        Append a transaction record, together with its script if given.

        commit_height is always stored unset; only sync sets it.

        Raises:
            DuplicateKeyError: if the transaction id is already stored
        """
        if record.commit_height is not None:
            record = replace(record, commit_height=None)

        with self.adapter.transaction() as conn:
            if record.script_hash is not None:
                self.insert_transaction_script(record.script_hash, script)
            try:
                conn.execute(
                    """
                    INSERT INTO transactions
                        (id, account_id, init_account_state, final_account_state,
                         input_notes, output_notes, script_hash, script_inputs,
                         block_num, commit_height)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _row_values(record),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"Transaction {record.id} already stored") from e

        logger.debug(f"Inserted transaction {record.id} for account {record.account_id}")
        return record

    def apply_transaction(self, result: TransactionResult) -> TransactionRecord:
        """
        Record a proven transaction and its local effects atomically.

        Order of writes:
        1. The transaction record (and script)
        2. The new account state with its code, storage and vault
        3. Created input notes, then created output notes
        4. consumer_transaction_id and Processing on every consumed note

        Any failure rolls back all four steps.

        Raises:
            DuplicateKeyError: if the transaction, account state or a created
                note is already stored
            NotFoundError: if a consumed note is unknown
            InvariantViolationError: if a consumed note cannot move to
                Processing or is held by another transaction
        """
        with self.adapter.transaction():
            record = self.insert_transaction(result.transaction, result.script)
            self.accounts.insert_account_state(
                result.account.account,
                result.account.code,
                result.account.storage,
                result.account.vault,
            )
            for note in result.created_input_notes:
                self.notes.insert_new_note(INPUT_NOTES, note)
            for note in result.created_output_notes:
                self.notes.insert_new_note(OUTPUT_NOTES, note)
            for note_id in result.consumed_note_ids:
                self.notes.mark_consumer_transaction(note_id, record.id, result.submitted_at)

        logger.info(
            f"Applied transaction {record.id}: account {record.account_id} at nonce "
            f"{result.account.nonce}, {len(result.created_input_notes)} input / "
            f"{len(result.created_output_notes)} output notes created, "
            f"{len(result.consumed_note_ids)} consumed"
        )
        return record

    def get_transactions(
        self, tx_filter: Union[TransactionFilter, str] = TransactionFilter.ALL
    ) -> List[TransactionView]:
        """
        All transactions, or only those without a commit height.

        Results carry the script payload resolved through script_hash.
        """
        tx_filter = parse_transaction_filter(tx_filter)
        with self.adapter.snapshot() as conn:
            if tx_filter == TransactionFilter.UNCOMMITTED:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE commit_height IS NULL ORDER BY rowid"
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM transactions ORDER BY rowid").fetchall()
            records = [_transaction_from_row(row) for row in rows]
            return enrich_transactions(self.adapter, records)

    def get_transaction(self, transaction_id: str) -> TransactionView:
        """
        Raises:
            NotFoundError: if the transaction is unknown
        """
        with self.adapter.snapshot() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"No transaction {transaction_id}")
            return enrich_transactions(self.adapter, [_transaction_from_row(row)])[0]

    def mark_committed(self, transaction_ids, block_nums) -> int:
        """
        Set commit_height for each id at the matching block number.

        Each row is read in full and written back with only commit_height
        changed. Unknown ids are skipped; a commit height that is already set
        is kept.

        Returns:
            Number of transactions updated
        """
        updated = 0
        with self.adapter.transaction() as conn:
            for transaction_id, block_num in zip(transaction_ids, block_nums):
                row = conn.execute(
                    "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
                ).fetchone()
                if row is None:
                    logger.debug(f"Committed transaction {transaction_id} not tracked, skipping")
                    continue

                record = _transaction_from_row(row)
                if record.commit_height is not None:
                    logger.warning(
                        f"Transaction {transaction_id} already committed at "
                        f"{record.commit_height}, ignoring {block_num}"
                    )
                    continue

                record = replace(record, commit_height=parse_u64(block_num, "transaction_block_num"))
                values = _row_values(record)
                conn.execute(
                    """
                    UPDATE transactions SET
                        account_id = ?, init_account_state = ?, final_account_state = ?,
                        input_notes = ?, output_notes = ?, script_hash = ?,
                        script_inputs = ?, block_num = ?, commit_height = ?
                    WHERE id = ?
                    """,
                    values[1:] + values[:1],
                )
                updated += 1
        return updated


def enrich_transactions(
    adapter: SQLiteAdapter, records: List[TransactionRecord]
) -> List[TransactionView]:
    """Attach script payloads to transaction records."""
    scripts = fetch_payloads(
        adapter, "transaction_scripts", "script_hash", (r.script_hash for r in records)
    )
    return [
        TransactionView(transaction=record, script=scripts.get(record.script_hash))
        for record in records
    ]
