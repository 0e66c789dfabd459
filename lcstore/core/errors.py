"""
Store error taxonomy.

Every failure surfaced by the store is one of these types. Errors are
never retried inside the store; they propagate to the caller.
"""


class StoreError(Exception):
    """Base store error."""
    pass


class NotFoundError(StoreError):
    """A lookup by key found no matching row."""
    pass


class DuplicateKeyError(StoreError):
    """An insert violated a uniqueness invariant."""
    pass


class InvariantViolationError(StoreError):
    """Malformed batch (parallel-array mismatch) or illegal state transition."""
    pass


class StorageFailureError(StoreError):
    """The underlying storage primitive failed (I/O, corruption, locking)."""
    pass


__all__ = [
    "StoreError",
    "NotFoundError",
    "DuplicateKeyError",
    "InvariantViolationError",
    "StorageFailureError",
]
