"""Sync batch application."""
from lcstore.core.sync.state_sync import StateSyncApplier, StateSyncUpdate, SyncSummary

__all__ = ["StateSyncApplier", "StateSyncUpdate", "SyncSummary"]
