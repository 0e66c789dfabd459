"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Content-addressed blobs (account code/storage/vaults, scripts)
- Entity tables (accounts, notes, transactions, chain data)
- Store export and import
"""

from lcstore.core.storage.sqlite_adapter import SQLiteAdapter
from lcstore.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
