"""Error taxonomy for the sync service.

Messages are short snake_case codes, optionally followed by ``: detail``,
so they read the same in logs, HTTP error bodies and the queue's
``error_message`` column.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    pass


class ConfigError(SyncError):
    pass


class InvalidOperationError(SyncError, ValueError):
    """Rejected before enqueue; never enters the queue."""


class MalformedPayloadError(SyncError):
    """A queued payload could not be decoded at apply time."""


class BatchIntegrityError(SyncError):
    """A batch fingerprint no longer matches the queue contents."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"batch_fingerprint_mismatch: expected={expected} actual={actual}")
        self.expected = expected
        self.actual = actual


class SyncBusyError(SyncError):
    pass


class StoreUnavailableError(SyncError):
    pass
