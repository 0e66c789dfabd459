"""
State Sync - applies one sync batch from the node to the local store.

Protocol:
1. Move the sync cursor to the batch's block number
2. Mark notes whose nullifier appears in the batch as Consumed
3. Store the new block header
4. Store the new chain MMR nodes
5. Attach inclusion proofs to committed output and input notes
6. Set commit heights of transactions seen on chain

All six steps run inside a single write transaction. If any step raises,
none of the touched tables reflect the batch.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from lcstore.core.errors import InvariantViolationError
from lcstore.core.state.chain_data import ChainStore
from lcstore.core.state.notes import INPUT_NOTES, OUTPUT_NOTES, NoteStore
from lcstore.core.state.transactions import TransactionStore
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import parse_u64, validate_parallel_arrays

logger = get_logger("sync")


@dataclass
class StateSyncUpdate:
    """
    One sync batch.

    Each group of parallel lists must have equal lengths; the entry at index
    i of one list belongs to the entry at index i of the others.
    """
    block_num: int
    block_header: bytes
    chain_mmr_peaks: bytes
    has_client_notes: bool = False
    nullifiers: List[str] = field(default_factory=list)
    nullifier_block_nums: List[int] = field(default_factory=list)
    node_indices: List[int] = field(default_factory=list)
    nodes: List[bytes] = field(default_factory=list)
    output_note_ids: List[str] = field(default_factory=list)
    output_inclusion_proofs: List[bytes] = field(default_factory=list)
    input_note_ids: List[str] = field(default_factory=list)
    input_inclusion_proofs: List[bytes] = field(default_factory=list)
    input_metadatas: List[Optional[Dict[str, Any]]] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)
    transaction_block_nums: List[int] = field(default_factory=list)

    def __post_init__(self):
        self.block_num = parse_u64(self.block_num, "block_num")

    def validate(self):
        """
        Check every group of parallel lists.

        Raises:
            InvariantViolationError: on the first group whose lengths differ
        """
        groups = [
            {"nullifiers": self.nullifiers, "nullifier_block_nums": self.nullifier_block_nums},
            {"node_indices": self.node_indices, "nodes": self.nodes},
            {
                "output_note_ids": self.output_note_ids,
                "output_inclusion_proofs": self.output_inclusion_proofs,
            },
            {
                "input_note_ids": self.input_note_ids,
                "input_inclusion_proofs": self.input_inclusion_proofs,
                "input_metadatas": self.input_metadatas,
            },
            {
                "transaction_ids": self.transaction_ids,
                "transaction_block_nums": self.transaction_block_nums,
            },
        ]
        for arrays in groups:
            valid, err = validate_parallel_arrays(arrays)
            if not valid:
                raise InvariantViolationError(err)


@dataclass
class SyncSummary:
    """Counts of what a sync batch changed."""
    previous_block_num: int = 0
    block_num: int = 0
    consumed_notes: int = 0
    header_written: bool = False
    nodes_written: int = 0
    committed_output_notes: int = 0
    committed_input_notes: int = 0
    committed_transactions: int = 0


class StateSyncApplier:
    """
    Applies sync batches atomically across the note, transaction and chain
    stores.
    """

    def __init__(
        self,
        adapter: SQLiteAdapter,
        notes: NoteStore,
        transactions: TransactionStore,
        chain: ChainStore,
    ):
        self.adapter = adapter
        self.notes = notes
        self.transactions = transactions
        self.chain = chain

    def apply_state_sync(self, update: StateSyncUpdate) -> SyncSummary:
        """
        Apply a sync batch.

        Raises:
            InvariantViolationError: on mismatched parallel lists or a cursor
                that would move backwards
            DuplicateKeyError: if the header or an MMR node conflicts with
                stored data
            StorageFailureError: if the database fails
        """
        update.validate()
        summary = SyncSummary(block_num=update.block_num)

        with self.adapter.transaction():
            self._update_sync_height(update, summary)
            self._update_spent_notes(update, summary)
            self._update_block_header(update, summary)
            self._update_chain_mmr_nodes(update, summary)
            self._update_committed_notes(update, summary)
            self._update_committed_transactions(update, summary)

        logger.info(
            f"Applied sync {summary.previous_block_num} -> {summary.block_num}: "
            f"{summary.consumed_notes} consumed, "
            f"{summary.committed_input_notes + summary.committed_output_notes} notes committed, "
            f"{summary.committed_transactions} transactions committed, "
            f"{summary.nodes_written} MMR nodes"
        )
        return summary

    # =========================================================================
    # Steps
    # =========================================================================

    def _update_sync_height(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.previous_block_num = self.chain.set_sync_height(update.block_num)

    def _update_spent_notes(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.consumed_notes = self.notes.mark_consumed_by_nullifiers(
            update.nullifiers, update.nullifier_block_nums
        )

    def _update_block_header(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.header_written = self.chain.insert_block_header(
            update.block_num,
            update.block_header,
            update.chain_mmr_peaks,
            update.has_client_notes,
        )

    def _update_chain_mmr_nodes(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.nodes_written = self.chain.insert_chain_mmr_nodes(update.node_indices, update.nodes)

    def _update_committed_notes(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.committed_output_notes = self.notes.mark_committed(
            OUTPUT_NOTES, update.output_note_ids, update.output_inclusion_proofs
        )
        summary.committed_input_notes = self.notes.mark_committed(
            INPUT_NOTES,
            update.input_note_ids,
            update.input_inclusion_proofs,
            update.input_metadatas,
        )

    def _update_committed_transactions(self, update: StateSyncUpdate, summary: SyncSummary):
        summary.committed_transactions = self.transactions.mark_committed(
            update.transaction_ids, update.transaction_block_nums
        )
