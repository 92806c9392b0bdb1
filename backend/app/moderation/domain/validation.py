"""Input validation helpers used before every repository call."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from app.moderation.domain.errors import ModerationValidationError
from app.moderation.domain.models import ReportReason

E = TypeVar("E", bound=Enum)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#x27;"),
    ("/", "&#x2F;"),
)

DESCRIPTION_MAX_LENGTH = 1000
REASON_MAX_LENGTH = 500
INTERNAL_NOTES_MAX_LENGTH = 5000
NOTIFICATION_MESSAGE_MAX_LENGTH = 2000
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365

# Lower number means more urgent.
PRIORITY_BY_REASON: dict[ReportReason, int] = {
    ReportReason.SELF_HARM: 1,
    ReportReason.HATE_SPEECH: 2,
    ReportReason.HARASSMENT: 2,
    ReportReason.COPYRIGHT_VIOLATION: 2,
    ReportReason.INAPPROPRIATE_CONTENT: 3,
    ReportReason.IMPERSONATION: 3,
    ReportReason.SPAM: 3,
    ReportReason.OTHER: 3,
}

ISO_FORMAT_HINT = "Invalid date format. Use ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)"


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def require_uuid(value: Any, *, message: str, field_name: str) -> str:
    if not is_valid_uuid(value):
        raise ModerationValidationError(message, details={field_name: value})
    return value


def sanitize_text(text: Optional[str]) -> str:
    """Strip markup and escape HTML-significant characters."""
    if not text:
        return ""
    cleaned = _TAG_RE.sub("", text)
    for raw, escaped in _ESCAPES:
        cleaned = cleaned.replace(raw, escaped)
    return cleaned.replace("\x00", "").strip()


def validate_text_length(text: Optional[str], max_length: int, field_name: str) -> None:
    if text is None:
        return
    if len(text) > max_length:
        raise ModerationValidationError(
            f"{field_name} must be {max_length} characters or less",
            details={"field_name": field_name, "length": len(text), "max_length": max_length},
        )


def coerce_enum(enum_cls: Type[E], value: Any, *, message: str, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ModerationValidationError(message, details={field_name: value}) from None


def calculate_priority(reason: ReportReason) -> int:
    return PRIORITY_BY_REASON.get(reason, 3)


def validate_duration(duration_days: Optional[int]) -> None:
    if duration_days is None:
        return
    # bool is an int subclass; True must not pass as one day
    is_int = isinstance(duration_days, int) and not isinstance(duration_days, bool)
    if not is_int or not MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS:
        raise ModerationValidationError(
            f"Duration must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS} days",
            details={"duration_days": duration_days},
        )


def parse_timestamp(value: Any, *, message: str = ISO_FORMAT_HINT, field_name: str = "date") -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ModerationValidationError(message, details={field_name: value}) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_date_range(start: Any, end: Any) -> tuple[datetime, datetime]:
    if not start or not end:
        raise ModerationValidationError(
            "Start date and end date are required",
            details={"start_date": start, "end_date": end},
        )
    start_at = parse_timestamp(start, field_name="start_date")
    end_at = parse_timestamp(end, field_name="end_date")
    if start_at > end_at:
        raise ModerationValidationError(
            "Start date must be before end date",
            details={"start_date": start_at.isoformat(), "end_date": end_at.isoformat()},
        )
    return start_at, end_at
