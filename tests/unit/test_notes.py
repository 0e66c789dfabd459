"""
Unit tests for the note store.

Tests cover:
1. Note insertion with details and scripts
2. Status filters and batch reads
3. Read-time enrichment (script payload, consumer account)
4. Unspent nullifiers
5. Consumer transaction marking and status transitions
"""

import pytest

from lcstore.core.errors import DuplicateKeyError, InvariantViolationError, NotFoundError
from lcstore.core.state.notes import (
    NoteDetails,
    NoteStatus,
    check_transition,
    parse_note_filter,
)
from lcstore.core.state.transactions import TransactionRecord
from lcstore.core.storage import StorageManager


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path):
    """Create a fresh store in a temporary directory."""
    manager = StorageManager(tmp_path)
    yield manager
    manager.close()


def _input(store, note_id, nullifier, status=NoteStatus.PENDING, **kwargs):
    return store.insert_input_note(
        note_id, b"assets", "recipient", {"nullifier": nullifier}, status=status, **kwargs
    )


# =============================================================================
# Details
# =============================================================================


class TestNoteDetails:
    """Tests for the details model."""

    def test_extra_fields_preserved(self):
        """Unknown detail fields should survive a round trip."""
        details = NoteDetails.parse('{"nullifier": "N1", "inputs": [1, 2]}')
        assert details.nullifier == "N1"
        assert details.script_hash is None
        assert NoteDetails.parse(details.to_json()).model_extra == {"inputs": [1, 2]}

    def test_nullifier_required(self):
        """Details without a nullifier should be rejected."""
        with pytest.raises(ValueError):
            NoteDetails.parse({"script_hash": "s"})


# =============================================================================
# Inserts
# =============================================================================


class TestInsert:
    """Tests for note inserts."""

    def test_insert_input_note(self, store):
        """An input note should be stored Pending with its metadata."""
        _input(store, "n1", "N1", metadata={"tag": 7})
        view = store.get_input_note("n1")
        assert view.status == NoteStatus.PENDING
        assert view.nullifier == "N1"
        assert view.note.metadata == {"tag": 7}
        assert view.note.created_at > 0

    def test_duplicate_note_rejected(self, store):
        """A second note with the same id should be rejected."""
        _input(store, "n1", "N1")
        with pytest.raises(DuplicateKeyError):
            _input(store, "n1", "N2")

    def test_input_note_requires_details(self, store):
        """Input notes should need details."""
        with pytest.raises(ValueError):
            store.insert_input_note("n1", b"assets", "recipient", None)

    def test_output_note_without_details(self, store):
        """Output notes may omit details."""
        store.insert_output_note("o1", b"assets", "recipient")
        [view] = store.get_output_notes()
        assert view.note.details is None
        assert view.nullifier is None

    def test_script_stored_with_note(self, store):
        """The note script should be stored and resolved on read."""
        store.insert_input_note(
            "n1", b"assets", "recipient", {"nullifier": "N1", "script_hash": "s1"}, script=b"script"
        )
        assert store.get_note_script("s1") == b"script"
        assert store.get_input_note("n1").script == b"script"

    def test_script_conflict_rolls_back_note(self, store):
        """A conflicting script should abort the note insert."""
        store.insert_input_note(
            "n1", b"assets", "recipient", {"nullifier": "N1", "script_hash": "s1"}, script=b"one"
        )
        with pytest.raises(DuplicateKeyError):
            store.insert_input_note(
                "n2", b"assets", "recipient", {"nullifier": "N2", "script_hash": "s1"}, script=b"two"
            )
        assert store.get_input_notes_by_ids(["n2"]) == []

    def test_script_without_hash_rejected(self, store):
        """A script needs a script_hash in the details."""
        with pytest.raises(ValueError):
            store.insert_input_note("n1", b"assets", "recipient", {"nullifier": "N1"}, script=b"s")


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    """Tests for note reads."""

    def test_filter_by_status(self, store):
        """Filters should select notes by status."""
        _input(store, "n1", "N1")
        _input(store, "n2", "N2", status=NoteStatus.COMMITTED)
        assert [v.note_id for v in store.get_input_notes("All")] == ["n1", "n2"]
        assert [v.note_id for v in store.get_input_notes(NoteStatus.COMMITTED)] == ["n2"]
        assert [v.note_id for v in store.get_input_notes("pending")] == ["n1"]

    def test_unknown_filter(self):
        """Unknown filter names should be rejected."""
        with pytest.raises(ValueError):
            parse_note_filter("Spent")

    def test_by_ids_keeps_request_order(self, store):
        """Batch reads should follow request order and skip unknown ids."""
        _input(store, "n1", "N1")
        _input(store, "n2", "N2")
        views = store.get_input_notes_by_ids(["n2", "missing", "n1"])
        assert [v.note_id for v in views] == ["n2", "n1"]

    def test_missing_note(self, store):
        """Unknown notes should raise NotFoundError."""
        with pytest.raises(NotFoundError):
            store.get_input_note("missing")

    def test_unspent_nullifiers(self, store):
        """Only Committed and Processing notes should be unspent."""
        _input(store, "n1", "N1")
        _input(store, "n2", "N2", status=NoteStatus.COMMITTED)
        _input(store, "n3", "N3", status=NoteStatus.PROCESSING)
        _input(store, "n4", "N4", status=NoteStatus.CONSUMED)
        store.insert_output_note(
            "o1", b"assets", "recipient", {"nullifier": "N5"}, status=NoteStatus.COMMITTED
        )
        assert store.get_unspent_nullifiers() == ["N2", "N3", "N5"]


# =============================================================================
# Consumer Transaction
# =============================================================================


class TestConsumerTransaction:
    """Tests for marking the consuming transaction."""

    def test_marks_processing_and_enriches_account(self, store):
        """The note should move to Processing and show the consumer account."""
        _input(store, "n1", "N1", status=NoteStatus.COMMITTED)
        store.insert_transaction(TransactionRecord("tx1", 77, b"init", b"final"))

        store.mark_consumer_transaction("n1", "tx1", submitted_at=1700000000)

        view = store.get_input_note("n1")
        assert view.status == NoteStatus.PROCESSING
        assert view.note.consumer_transaction_id == "tx1"
        assert view.note.submitted_at == 1700000000
        assert view.consumer_account_id == 77

    def test_checks_output_table(self, store):
        """Output notes should be marked too."""
        store.insert_output_note("o1", b"assets", "recipient", {"nullifier": "N1"})
        assert store.mark_consumer_transaction("o1", "tx1") == 1
        [view] = store.get_output_notes_by_ids(["o1"])
        assert view.status == NoteStatus.PROCESSING
        assert view.consumer_account_id is None

    def test_unknown_note(self, store):
        """Unknown notes should raise NotFoundError."""
        with pytest.raises(NotFoundError):
            store.mark_consumer_transaction("missing", "tx1")

    def test_consumed_note_rejected(self, store):
        """Consumed notes should not move back to Processing."""
        _input(store, "n1", "N1", status=NoteStatus.CONSUMED)
        with pytest.raises(InvariantViolationError):
            store.mark_consumer_transaction("n1", "tx1")
        assert store.get_input_note("n1").status == NoteStatus.CONSUMED

    def test_second_transaction_rejected(self, store):
        """A Processing note should not be taken over by another transaction."""
        _input(store, "n1", "N1", status=NoteStatus.COMMITTED)
        store.mark_consumer_transaction("n1", "tx1", submitted_at=100)

        with pytest.raises(InvariantViolationError):
            store.mark_consumer_transaction("n1", "tx2", submitted_at=200)

        note = store.get_input_note("n1").note
        assert note.consumer_transaction_id == "tx1"
        assert note.submitted_at == 100

    def test_same_transaction_remark_allowed(self, store):
        """Marking again with the same transaction should be accepted."""
        _input(store, "n1", "N1", status=NoteStatus.COMMITTED)
        store.mark_consumer_transaction("n1", "tx1", submitted_at=100)
        assert store.mark_consumer_transaction("n1", "tx1", submitted_at=150) == 1
        assert store.get_input_note("n1").note.submitted_at == 150


class TestTransitions:
    """Tests for the status state machine."""

    def test_forward_moves_allowed(self):
        """Forward transitions should pass."""
        check_transition("n", NoteStatus.PENDING, NoteStatus.COMMITTED)
        check_transition("n", NoteStatus.COMMITTED, NoteStatus.PROCESSING)
        check_transition("n", NoteStatus.PROCESSING, NoteStatus.CONSUMED)
        check_transition("n", NoteStatus.PROCESSING, NoteStatus.PROCESSING)

    def test_backward_moves_rejected(self):
        """Backward transitions should be rejected."""
        with pytest.raises(InvariantViolationError):
            check_transition("n", NoteStatus.COMMITTED, NoteStatus.PENDING)
        with pytest.raises(InvariantViolationError):
            check_transition("n", NoteStatus.CONSUMED, NoteStatus.CONSUMED)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
