"""Exception taxonomy for storage, sync and merge failures."""
from typing import Optional


class TrackerError(Exception):
    """Base class for every error raised by prep_tracker."""


class StorageError(TrackerError):
    """A LocalStore read or write failed."""


class StorageUnavailable(StorageError):
    """Persistent storage cannot be opened on this platform."""


class InvalidDocument(TrackerError):
    """A persisted or remote document failed schema validation."""


class SyncError(TrackerError):
    """Transient failure talking to the remote progress service."""


class NetworkUnavailable(SyncError):
    """The remote service could not be reached."""


class PushFailed(SyncError):
    """The remote service refused a write."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class MergeFailure(TrackerError):
    """merge_both could not combine the two values."""


class MaxRetriesExceeded(SyncError):
    """A queued mutation was dropped after exhausting its attempts."""

    def __init__(self, item_id, attempts: int):
        super().__init__(f"sync item {item_id} dropped after {attempts} attempts")
        self.item_id = item_id
        self.attempts = attempts
