"""
Unit tests for applying sync batches.

Tests cover:
1. Nullifier consumption
2. Note and transaction commitment
3. Header and MMR node storage
4. Atomicity when a step fails, and isolation from concurrent readers
5. Malformed batches
"""

import threading

import pytest

from lcstore.core.errors import DuplicateKeyError, InvariantViolationError, StorageFailureError
from lcstore.core.state.notes import NoteStatus
from lcstore.core.state.transactions import TransactionRecord
from lcstore.core.storage import StorageManager
from lcstore.core.sync import StateSyncApplier, StateSyncUpdate


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path):
    """Create a fresh store in a temporary directory."""
    manager = StorageManager(tmp_path)
    yield manager
    manager.close()


def _update(block_num=50, **kwargs):
    return StateSyncUpdate(
        block_num=block_num,
        block_header=f"header{block_num}".encode(),
        chain_mmr_peaks=f"peaks{block_num}".encode(),
        **kwargs,
    )


def _input(store, note_id, nullifier, status=NoteStatus.PENDING):
    store.insert_input_note(note_id, b"assets", "recipient", {"nullifier": nullifier}, status=status)


# =============================================================================
# Steps
# =============================================================================


class TestApplyStateSync:
    """Tests for the individual effects of a sync batch."""

    def test_empty_batch_moves_cursor_and_stores_header(self, store):
        """An empty batch should still move the cursor and store the header."""
        summary = store.apply_state_sync(_update(50, has_client_notes=True))
        assert summary.previous_block_num == 0
        assert store.get_sync_height() == 50
        [header] = store.get_tracked_block_headers()
        assert header.block_num == 50
        assert header.header == b"header50"

    def test_nullifier_consumption(self, store):
        """Matching nullifiers should consume input notes."""
        _input(store, "n1", "N1")
        _input(store, "n2", "N2")

        store.apply_state_sync(_update(nullifiers=["N1"], nullifier_block_nums=[42]))

        consumed = store.get_input_note("n1").note
        assert consumed.status == NoteStatus.CONSUMED
        assert consumed.nullifier_height == 42
        assert store.get_input_note("n2").status == NoteStatus.PENDING

    def test_output_notes_consumed_too(self, store):
        """Matching nullifiers should consume output notes."""
        store.insert_output_note("o1", b"assets", "recipient", {"nullifier": "N9"})
        store.insert_output_note("o2", b"assets", "recipient")

        store.apply_state_sync(_update(nullifiers=["N9"], nullifier_block_nums=[7]))

        views = {v.note_id: v for v in store.get_output_notes()}
        assert views["o1"].status == NoteStatus.CONSUMED
        assert views["o1"].note.nullifier_height == 7
        assert views["o2"].status == NoteStatus.PENDING

    def test_consumed_note_keeps_first_height(self, store):
        """A later batch should not change the nullifier height."""
        _input(store, "n1", "N1")
        store.apply_state_sync(_update(50, nullifiers=["N1"], nullifier_block_nums=[42]))
        store.apply_state_sync(_update(60, nullifiers=["N1"], nullifier_block_nums=[55]))
        assert store.get_input_note("n1").note.nullifier_height == 42

    def test_commit_height_update(self, store):
        """Only commit_height should change on a committed transaction."""
        before = store.insert_transaction(
            TransactionRecord("tx1", 3, b"init", b"final", input_notes=b"in", block_num=20)
        )

        store.apply_state_sync(_update(transaction_ids=["tx1"], transaction_block_nums=[100]))

        [view] = store.get_transactions("All")
        after = view.transaction
        assert after.commit_height == 100
        assert after.account_id == before.account_id
        assert after.init_account_state == before.init_account_state
        assert after.final_account_state == before.final_account_state
        assert after.input_notes == before.input_notes
        assert after.block_num == before.block_num
        assert store.get_transactions("Uncommitted") == []

    def test_committed_notes(self, store):
        """Listed notes should get their proof and become Committed."""
        _input(store, "n1", "N1")
        store.insert_output_note("o1", b"assets", "recipient")

        summary = store.apply_state_sync(
            _update(
                output_note_ids=["o1"],
                output_inclusion_proofs=[b"proof-o1"],
                input_note_ids=["n1", "unknown"],
                input_inclusion_proofs=[b"proof-n1", b"proof-x"],
                input_metadatas=[{"tag": 9}, None],
            )
        )

        note = store.get_input_note("n1").note
        assert note.status == NoteStatus.COMMITTED
        assert note.inclusion_proof == b"proof-n1"
        assert note.metadata == {"tag": 9}
        [output] = store.get_output_notes()
        assert output.status == NoteStatus.COMMITTED
        assert output.note.inclusion_proof == b"proof-o1"
        assert summary.committed_input_notes == 1
        assert summary.committed_output_notes == 1

    def test_processing_note_keeps_status_on_commit(self, store):
        """Processing notes should get the proof but keep their status."""
        _input(store, "n1", "N1", status=NoteStatus.PROCESSING)
        store.apply_state_sync(
            _update(
                input_note_ids=["n1"],
                input_inclusion_proofs=[b"proof"],
                input_metadatas=[{}],
            )
        )
        note = store.get_input_note("n1").note
        assert note.status == NoteStatus.PROCESSING
        assert note.inclusion_proof == b"proof"

    def test_mmr_nodes(self, store):
        """Batch MMR nodes should be stored."""
        store.apply_state_sync(_update(node_indices=[4, 5], nodes=[b"n4", b"n5"]))
        assert store.get_chain_mmr_nodes([4, 5]) == {4: b"n4", 5: b"n5"}

    def test_cursor_cannot_move_backwards(self, store):
        """A batch below the cursor should be rejected."""
        store.apply_state_sync(_update(50))
        with pytest.raises(InvariantViolationError):
            store.apply_state_sync(_update(40))
        assert store.get_sync_height() == 50

    def test_same_height_replay(self, store):
        """Replaying the current height should be accepted."""
        store.apply_state_sync(_update(50))
        store.apply_state_sync(_update(50))
        assert store.get_sync_height() == 50


# =============================================================================
# Atomicity
# =============================================================================


class TestAtomicity:
    """A failing batch leaves no trace."""

    def test_failing_last_step_rolls_back_everything(self, store, monkeypatch):
        """A failure in the last step should undo all earlier steps."""
        _input(store, "n1", "N1")
        store.insert_transaction(TransactionRecord("tx1", 3, b"init", b"final"))

        def fail(self, update, summary):
            raise StorageFailureError("disk gone")

        monkeypatch.setattr(StateSyncApplier, "_update_committed_transactions", fail)

        with pytest.raises(StorageFailureError):
            store.apply_state_sync(
                _update(
                    50,
                    nullifiers=["N1"],
                    nullifier_block_nums=[42],
                    node_indices=[1],
                    nodes=[b"node"],
                    transaction_ids=["tx1"],
                    transaction_block_nums=[100],
                )
            )

        assert store.get_sync_height() == 0
        note = store.get_input_note("n1").note
        assert note.status == NoteStatus.PENDING
        assert note.nullifier_height is None
        assert store.get_block_headers([50]) == [None]
        assert store.get_chain_mmr_nodes_all() == {}
        assert store.get_transaction("tx1").commit_height is None

    def test_concurrent_reader_sees_nothing_until_commit(self, store, monkeypatch):
        """A reader on another thread should see the old state while a batch is stalled."""
        _input(store, "n1", "N1")
        store.insert_transaction(TransactionRecord("tx1", 3, b"init", b"final"))

        reached = threading.Event()
        release = threading.Event()
        errors = []
        original = StateSyncApplier._update_committed_transactions

        def stalled(self, update, summary):
            reached.set()
            release.wait(timeout=10)
            return original(self, update, summary)

        monkeypatch.setattr(StateSyncApplier, "_update_committed_transactions", stalled)

        def writer():
            try:
                store.apply_state_sync(
                    _update(
                        50,
                        nullifiers=["N1"],
                        nullifier_block_nums=[42],
                        transaction_ids=["tx1"],
                        transaction_block_nums=[50],
                    )
                )
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            assert reached.wait(timeout=10)
            assert store.get_sync_height() == 0
            assert store.get_input_note("n1").status == NoteStatus.PENDING
            assert store.get_block_headers([50]) == [None]
            assert store.get_transaction("tx1").commit_height is None
        finally:
            release.set()
            thread.join(timeout=10)

        assert errors == []
        assert store.get_sync_height() == 50
        assert store.get_input_note("n1").status == NoteStatus.CONSUMED
        assert store.get_transaction("tx1").commit_height == 50

    def test_conflicting_header_rolls_back_cursor(self, store):
        """A header conflict should leave the cursor unchanged."""
        store.insert_block_header(50, b"different", b"peaks50", False)
        _input(store, "n1", "N1")

        with pytest.raises(DuplicateKeyError):
            store.apply_state_sync(_update(50, nullifiers=["N1"], nullifier_block_nums=[42]))

        assert store.get_sync_height() == 0
        assert store.get_input_note("n1").status == NoteStatus.PENDING


# =============================================================================
# Malformed Batches
# =============================================================================


class TestMalformedBatch:
    """Parallel-array mismatches are rejected before any write."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(nullifiers=["N1"], nullifier_block_nums=[]),
            dict(node_indices=[1, 2], nodes=[b"a"]),
            dict(output_note_ids=["o1"], output_inclusion_proofs=[]),
            dict(input_note_ids=["n1"], input_inclusion_proofs=[b"p"], input_metadatas=[]),
            dict(transaction_ids=["tx1"], transaction_block_nums=[1, 2]),
        ],
    )
    def test_mismatch(self, store, kwargs):
        """Mismatched arrays should be rejected before any write."""
        with pytest.raises(InvariantViolationError):
            store.apply_state_sync(_update(**kwargs))
        assert store.get_sync_height() == 0

    def test_invalid_block_num(self):
        """Negative block numbers should be rejected."""
        with pytest.raises(ValueError):
            _update(-5)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
