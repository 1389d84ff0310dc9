"""
Exception taxonomy shared by the fetcher, the store and the retrieval layer.
"""
from typing import Optional


class CatchupError(Exception):
    """Base class for all errors raised by this package."""


class RemoteAPIError(CatchupError):
    """
    A request to the remote tracker failed.

    kind is one of: transient, timeout, rate_limited, auth_invalid, validation, http.
    """

    kind = "http"

    def __init__(self, message: str, status_code: int = 0, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.url = url

    def __str__(self):
        return f"{self.message} (status={self.status_code}, kind={self.kind})"


class TransientNetworkError(RemoteAPIError):
    kind = "transient"


class RemoteTimeoutError(TransientNetworkError):
    kind = "timeout"


class RateLimitedError(RemoteAPIError):
    kind = "rate_limited"

    def __init__(self, message: str, status_code: int = 429, url: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, status_code, url)
        self.retry_after = retry_after


class AuthInvalidError(RemoteAPIError):
    """401 from the remote API. Never retried; credentials must be refreshed out-of-band."""

    kind = "auth_invalid"


class PayloadValidationError(RemoteAPIError):
    kind = "validation"


class StoreError(CatchupError):
    """Persisting a batch failed. The sync watermark must not advance."""


class SearchError(CatchupError):
    """The full-text engine rejected or failed a query."""


class NotFoundError(CatchupError):
    """A referenced item does not exist or is not owned by the caller."""


class ConfigurationError(CatchupError):
    pass


__all__ = [
    "CatchupError",
    "RemoteAPIError",
    "TransientNetworkError",
    "RemoteTimeoutError",
    "RateLimitedError",
    "AuthInvalidError",
    "PayloadValidationError",
    "StoreError",
    "SearchError",
    "NotFoundError",
    "ConfigurationError",
]
