"""Entity stores for accounts, notes, transactions and chain data"""
from lcstore.core.state.accounts import AccountAuth, AccountRecord, AccountStore, AccountView
from lcstore.core.state.chain_data import BlockHeaderRecord, ChainStore
from lcstore.core.state.notes import (
    NewNote,
    NoteDetails,
    NoteFilter,
    NoteRecord,
    NoteStatus,
    NoteStore,
    NoteView,
)
from lcstore.core.state.transactions import (
    TransactionFilter,
    TransactionRecord,
    TransactionResult,
    TransactionStore,
    TransactionView,
)

__all__ = [
    "AccountAuth",
    "AccountRecord",
    "AccountStore",
    "AccountView",
    "BlockHeaderRecord",
    "ChainStore",
    "NewNote",
    "NoteDetails",
    "NoteFilter",
    "NoteRecord",
    "NoteStatus",
    "NoteStore",
    "NoteView",
    "TransactionFilter",
    "TransactionRecord",
    "TransactionResult",
    "TransactionStore",
    "TransactionView",
]
