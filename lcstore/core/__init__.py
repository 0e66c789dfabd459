"""Store core: configuration, errors, storage backend, entity stores and sync."""
