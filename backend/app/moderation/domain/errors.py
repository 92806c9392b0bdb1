"""Typed error taxonomy for the moderation service layer."""

from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModerationErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"


class ModerationError(Exception):
    """Base class for moderation failures.

    Every error carries a stable ``code`` and a ``details`` mapping with the
    offending values; the message text is part of the public contract.
    """

    default_code = ModerationErrorCode.DATABASE_ERROR

    def __init__(
        self,
        message: str,
        code: ModerationErrorCode | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ModerationValidationError(ModerationError):
    default_code = ModerationErrorCode.VALIDATION_ERROR


class ImmutableActionError(ModerationValidationError):
    """Raised by repositories when a reversed action would be modified."""

    def __init__(self, action_id: str) -> None:
        super().__init__(
            "Reversed moderation actions are immutable",
            details={"action_id": action_id},
        )


class RateLimitExceededError(ModerationError):
    default_code = ModerationErrorCode.RATE_LIMIT_EXCEEDED


class UnauthorizedError(ModerationError):
    default_code = ModerationErrorCode.UNAUTHORIZED


class NotFoundError(ModerationError):
    default_code = ModerationErrorCode.NOT_FOUND


class ModerationDatabaseError(ModerationError):
    default_code = ModerationErrorCode.DATABASE_ERROR


def wrap_unexpected(operation: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Re-raise non-moderation failures of a service call as ``DATABASE_ERROR``."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except ModerationError:
                raise
            except Exception as exc:
                logger.exception("moderation operation failed", extra={"operation": operation})
                raise ModerationDatabaseError(
                    f"An unexpected error occurred while {operation}",
                    details={"original_error": str(exc)},
                ) from exc

        return wrapper

    return decorator
