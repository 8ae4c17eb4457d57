from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from realmauth.logging import get_logger
from realmauth.service.errors import ServiceError
from realmauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_VERIFIED = "already_verified"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    INVALID_TOKEN = "invalid_token"
    NOT_VERIFIED = "not_verified"
    BANNED = "banned"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_VERIFIED: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_TOKEN: 400,
    ErrorKind.NOT_VERIFIED: 403,
    ErrorKind.BANNED: 403,
    ErrorKind.EXPIRED: 410,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}


@dataclass
class OperationResult:
    """Outcome of a public service operation.

    Successful results carry ``data``; failures carry an ``ErrorKind``, a
    human-readable ``message`` and optional structured ``detail``.
    """

    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    kind: Optional[ErrorKind] = None
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None, message: str = "") -> "OperationResult":
        return cls(ok=True, data=data or {}, message=message)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> "OperationResult":
        return cls(ok=False, kind=kind, message=message, detail=detail or {})

    @property
    def status_code(self) -> int:
        if self.ok:
            return 200
        return STATUS_CODES.get(self.kind, 500)


def _kind_for(exc: ServiceError) -> ErrorKind:
    try:
        return ErrorKind(exc.error_code)
    except ValueError:
        return ErrorKind.INTERNAL


def service_operation(
    func: Callable[..., Awaitable[Dict[str, Any]]],
) -> Callable[..., Awaitable[OperationResult]]:
    """Wrap an async operation so every outcome is an ``OperationResult``.

    The wrapped coroutine returns its payload dict (optionally a
    ``(payload, message)`` tuple) on success and raises ``ServiceError`` on
    expected failures.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> OperationResult:
        try:
            outcome = await func(*args, **kwargs)
        except ServiceError as exc:
            return OperationResult.failure(_kind_for(exc), exc.message, exc.detail)
        except ConstraintViolation as exc:
            return OperationResult.failure(ErrorKind.CONFLICT, exc.message, exc.detail)
        except Exception as exc:
            logger.exception(
                "service_operation_failed", operation=func.__qualname__, error=str(exc)
            )
            return OperationResult.failure(ErrorKind.INTERNAL, "internal error")
        if isinstance(outcome, tuple):
            data, message = outcome
            return OperationResult.success(data, message)
        return OperationResult.success(outcome)

    return wrapper


__all__ = ["ErrorKind", "OperationResult", "STATUS_CODES", "service_operation"]
