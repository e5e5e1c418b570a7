"""Error taxonomy for the scheduling sync pipeline."""
from typing import Optional


class SyncError(Exception):
    """Base class for all errors raised or recorded during a sync run."""

    def __init__(self, message: str, identifier: Optional[str] = None):
        super().__init__(message)
        self.identifier = identifier


class SchedulingApiError(SyncError):
    """Non-retryable error returned by the scheduling vendor API."""

    def __init__(
        self,
        message: str,
        identifier: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, identifier)
        self.status_code = status_code


class TransientApiError(SchedulingApiError):
    """Network failure, timeout, rate limit (429) or 5xx from the vendor."""


class MalformedRecordError(SyncError):
    """Vendor record with missing or invalid identity fields."""


class ClassificationAmbiguous(SyncError):
    """No classification rule matched; a default category was applied."""


class PersistenceError(SyncError):
    """Upsert failure in the persistence sink."""


class ConfigurationError(SyncError):
    """Missing credentials or invalid settings. Aborts the run."""
