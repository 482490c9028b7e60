"""
Error taxonomy for the sync pipeline.

Ads API errors are classified by the client and acted on by the orchestrator:
auth and permanent errors fail the run, rate-limit and transient errors are
retried with backoff up to a bounded attempt count.
"""

from typing import Optional


class AdsAPIError(Exception):
    """Base class for classified external ads API failures."""

    kind = "api_error"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class AuthError(AdsAPIError):
    """Invalid or expired access token. Fatal for the run, user-actionable."""

    kind = "auth"

    def __init__(self, message: str, seconds_remaining: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.seconds_remaining = seconds_remaining


class RateLimitError(AdsAPIError):
    kind = "rate_limit"
    retryable = True

    def __init__(self, message: str, retry_after: float = 30.0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientNetworkError(AdsAPIError):
    """5xx responses and timeouts."""

    kind = "transient"
    retryable = True


class PermanentError(AdsAPIError):
    kind = "permanent"


class ValidationError(Exception):
    """Malformed upload rejected before any writes."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ConflictError(Exception):
    """A sync tried to start while another one is running for the same account."""


class NotFoundError(Exception):
    """Referenced account / creative / log does not exist."""


class SyncCancelled(Exception):
    """Raised inside a run when its log row was moved to a terminal state externally."""
