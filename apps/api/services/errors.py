"""Domain errors surfaced by the bookkeeping services."""

from __future__ import annotations

from typing import Any, Dict


class PhotoEditError(Exception):
    """Base class for errors that map onto an API response."""

    status_code = 400
    code = "ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class ValidationError(PhotoEditError):
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFoundError(PhotoEditError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PhotoEditError):
    status_code = 409
    code = "CONFLICT"


class AuthenticationError(PhotoEditError):
    status_code = 401
    code = "UNAUTHORIZED"


class TierRequiredError(PhotoEditError):
    status_code = 403
    code = "PRO_REQUIRED"

    def __init__(self, message: str = "This feature requires a PRO subscription.", **details: Any) -> None:
        super().__init__(message, **details)


class InsufficientCreditsError(PhotoEditError):
    status_code = 403
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, remaining: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, remaining: {remaining}.",
            credits_required=required,
            credits_remaining=remaining,
        )
        self.required = required
        self.remaining = remaining


class InvalidStateError(PhotoEditError):
    """Illegal lifecycle transition; indicates a programming error."""

    status_code = 409
    code = "INVALID_STATE"


class ProviderUnavailableError(PhotoEditError):
    status_code = 502
    code = "PROVIDER_UNAVAILABLE"


class PaymentDeclinedError(PhotoEditError):
    status_code = 402
    code = "PAYMENT_DECLINED"


class RateLimitedError(PhotoEditError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, scope: str, retry_after: int) -> None:
        super().__init__(
            f"Rate limit exceeded for {scope}. Try again in {retry_after}s.",
            retry_after_seconds=retry_after,
        )
        self.retry_after = retry_after
