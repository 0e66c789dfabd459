"""
Light Client Store (lcstore)

Local persistent store for a blockchain light client:
- Versioned accounts with content-addressed code, storage and vaults
- Input and output note lifecycle
- Locally proven transactions
- Block headers, chain MMR nodes and the sync cursor
- Atomic application of sync batches
"""

__version__ = "0.1.0"

from lcstore.core.storage import SQLiteAdapter, StorageManager
from lcstore.core.config import StoreConfig, load_config
from lcstore.core.errors import (
    DuplicateKeyError,
    InvariantViolationError,
    NotFoundError,
    StorageFailureError,
    StoreError,
)
from lcstore.core.sync import StateSyncUpdate

__all__ = [
    "SQLiteAdapter",
    "StorageManager",
    "StoreConfig",
    "load_config",
    "StoreError",
    "NotFoundError",
    "DuplicateKeyError",
    "InvariantViolationError",
    "StorageFailureError",
    "StateSyncUpdate",
]
