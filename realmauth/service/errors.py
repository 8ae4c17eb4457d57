from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    The ``error_code`` doubles as the failure kind reported in an
    ``OperationResult``:
    - not_found (404)
    - conflict (409)
    - already_verified (409)
    - invalid_input (400)
    - unauthorized (401)
    - invalid_token (400)
    - not_verified (403)
    - banned (403)
    - expired (410)
    - rate_limited (429)
    - internal (500)
    """

    status_code: int = 400
    error_code: str = "invalid_input"

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
    """Input was malformed or failed a policy check (400)."""
    status_code = 400
    error_code = "invalid_input"


class AuthenticationError(ServiceError):
    """A credential or proof did not match (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(ServiceError):
    """A verification, change or reset token did not match (400)."""
    status_code = 400
    error_code = "invalid_token"


class AccountNotVerifiedError(ServiceError):
    """The account has not confirmed its email yet (403)."""
    status_code = 403
    error_code = "not_verified"


class AccountBannedError(ServiceError):
    """Login is blocked by a temporary or permanent ban (403)."""
    status_code = 403
    error_code = "banned"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email or a redeemed code (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyVerifiedError(ConflictError):
    """The account is already verified (409)."""
    error_code = "already_verified"


class ExpiredError(ServiceError):
    """A token or invite code is past its expiry (410)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    """The action was attempted again too soon (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "AccountNotVerifiedError",
    "AccountBannedError",
    "NotFoundError",
    "ConflictError",
    "AlreadyVerifiedError",
    "ExpiredError",
    "RateLimitedError",
]
