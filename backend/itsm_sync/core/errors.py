"""Error taxonomy shared by the queue, the adapters and the webhook processor.

Only the queue processor decides retry-vs-terminal; it does so by class:
``TransientError`` is retried per the backoff table, everything else that
derives from ``SyncError`` fails the item immediately.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine failures."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(SyncError):
    """Bad input (missing mapping value, malformed webhook). Never retried."""

    kind = "validation"


class MissingRequiredField(ValidationError):
    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}")
        self.field = field


class MalformedWebhook(ValidationError):
    kind = "malformed_webhook"


class TransientError(SyncError):
    """Network failure, HTTP 5xx or 429. Retried up to max_attempts."""

    kind = "transient"
    retryable = True


class PlatformPermissionError(SyncError):
    """HTTP 401/403 from the external platform."""

    kind = "permission"


class PlanLimitError(SyncError):
    """HTTP 402: the external plan does not allow the operation."""

    kind = "plan_limit"


class QueueStateError(SyncError):
    """Illegal queue transition, e.g. cancelling an in-flight delivery."""

    kind = "queue_state"


def classify_http_status(status_code: int, message: str = "") -> SyncError:
    """Map an HTTP error status from a platform to the taxonomy."""
    text = message or f"HTTP {status_code}"
    if status_code == 429 or status_code >= 500:
        return TransientError(text, status_code=status_code)
    if status_code == 402:
        return PlanLimitError(text, status_code=status_code)
    if status_code in (401, 403):
        return PlatformPermissionError(text, status_code=status_code)
    return ValidationError(text, status_code=status_code)
