"""Exception taxonomy for the syndication engine.

Adapter calls raise one of the ``AdapterError`` subclasses; the orchestrator
decides from the class alone whether to retry, refresh credentials, or record
a failure. ``FatalSyncError`` subclasses halt the run.
"""

from typing import Any, Dict, Optional


class SyndicationError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AdapterError(SyndicationError):
    """A platform call failed."""

    kind = "adapter_error"

    def __init__(
        self,
        message: str,
        platform: str = "",
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ):
        super().__init__(message, {"platform": platform, "status_code": status_code})
        self.platform = platform
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        prefix = f"[{self.platform}] " if self.platform else ""
        code = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{prefix}{self.message}{code}"


class TransientError(AdapterError):
    """Rate limiting, server errors and timeouts. Retried with backoff."""

    kind = "transient"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthExpiredError(AdapterError):
    """Credentials were rejected. Retried after the credential provider refreshes them."""

    kind = "auth_expired"


class PermanentRejectError(AdapterError):
    """Validation failures and unsupported media. Never retried."""

    kind = "permanent_reject"


class FatalSyncError(SyndicationError):
    """The run cannot continue without operator intervention."""


class LedgerCorrupt(FatalSyncError):
    """Persisted ledger state could not be parsed."""


class CursorLost(FatalSyncError):
    """The pagination cursor is gone and there is no safe restart point."""


class RunNotFound(SyndicationError):
    """No persisted run exists under the requested name."""
