"""Error taxonomy for the sync engine.

Throttling and transient failures are retried inside the catalog client and
only surface here once the retry budget is spent.
"""


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ConfigurationError(SyncError):
    """Unknown entity or missing endpoint mapping. Never retried."""


class CatalogError(SyncError):
    """Remote catalog rejected the request (non-retryable)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CatalogUnavailable(CatalogError):
    """Network or 5xx failure that outlasted all retries."""


class ThrottledError(CatalogError):
    """Still rate limited after the bounded number of attempts."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class EmptyResponseError(SyncError):
    """Detail call returned no payload."""
