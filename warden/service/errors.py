from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Root of the domain errors the API turns into envelopes.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    ends up in the response envelope:
    - validation_error / self_action / token_invalid (400)
    - unauthorized (401)
    - forbidden / not_verified (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - delivery_failed / server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state changed (400)."""
    status_code = 400
    error_code = "validation_error"


class SelfActionError(ValidationError):
    """An admin tried to delete or re-role their own account (400)."""
    error_code = "self_action"


class TokenInvalidOrExpiredError(ValidationError):
    """A one-time token is unknown, already used, or past its expiry (400)."""
    error_code = "token_invalid"

    def __init__(self, message: str = "Token is invalid or has expired.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """No valid credentials were presented (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Authenticated but lacking a required role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotVerifiedError(AuthorizationError):
    """Credentials matched but the email address is not verified yet (403)."""
    error_code = "not_verified"


class NotFoundError(ServiceError):
    """Target account does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Caller spent its token bucket (429)."""
    status_code = 429
    error_code = "rate_limited"


class DeliveryError(ServiceError):
    """Outbound email could not be handed to the mail server (500)."""
    status_code = 500
    error_code = "delivery_failed"


class InternalError(ServiceError):
    """Unexpected failure inside the service (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "SelfActionError",
    "TokenInvalidOrExpiredError",
    "AuthenticationError",
    "AuthorizationError",
    "NotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DeliveryError",
    "InternalError",
]
