"""Notification templates for moderation outcomes and their delivery sink."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from app.moderation.domain.models import (
    ModerationAction,
    ModerationActionType,
    Notification,
    ReversalType,
    RestrictionType,
)
from app.moderation.domain.repositories import NotificationRepository

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "moderation"

_ACTION_TITLES: dict[ModerationActionType, str] = {
    ModerationActionType.CONTENT_REMOVED: "Content Removed",
    ModerationActionType.USER_WARNED: "Warning Issued",
    ModerationActionType.USER_SUSPENDED: "Account Suspended",
    ModerationActionType.USER_BANNED: "Account Suspended Permanently",
    ModerationActionType.RESTRICTION_APPLIED: "Account Restriction Applied",
}

_ACTION_PRIORITIES: dict[ModerationActionType, int] = {
    ModerationActionType.USER_BANNED: 3,
    ModerationActionType.USER_SUSPENDED: 3,
    ModerationActionType.RESTRICTION_APPLIED: 2,
    ModerationActionType.CONTENT_REMOVED: 2,
}

_REVERSAL_TITLES: dict[ReversalType, str] = {
    ReversalType.SUSPENSION_LIFTED: "Suspension Lifted",
    ReversalType.BAN_REMOVED: "Ban Removed",
    ReversalType.RESTRICTION_REMOVED: "Restriction Removed",
}

_REVOCATION_COPY: dict[ModerationActionType, tuple[str, str]] = {
    ModerationActionType.USER_SUSPENDED: ("Suspension Lifted", "Your account suspension has been lifted"),
    ModerationActionType.USER_BANNED: ("Ban Removed", "Your permanent ban has been removed"),
    ModerationActionType.RESTRICTION_APPLIED: (
        "Restriction Removed",
        "A restriction on your account has been removed",
    ),
    ModerationActionType.USER_WARNED: ("Warning Revoked", "A warning on your account has been revoked"),
    ModerationActionType.CONTENT_REMOVED: (
        "Content Removal Revoked",
        "A content removal action has been revoked (note: content cannot be restored)",
    ),
}

# (label shown when applied, what the user can no longer do, label when lifted, what comes back)
_RESTRICTION_COPY: dict[RestrictionType, tuple[str, str, str, str]] = {
    RestrictionType.POSTING_DISABLED: (
        "Posting Disabled",
        "You will not be able to create new posts.",
        "posting restriction",
        "You can now create new posts.",
    ),
    RestrictionType.COMMENTING_DISABLED: (
        "Commenting Disabled",
        "You will not be able to create new comments.",
        "commenting restriction",
        "You can now create new comments.",
    ),
    RestrictionType.UPLOAD_DISABLED: (
        "Upload Disabled",
        "You will not be able to upload new tracks.",
        "upload restriction",
        "You can now upload new tracks.",
    ),
    RestrictionType.SUSPENDED: (
        "Account Suspended",
        "You will not be able to perform any actions on the platform.",
        "account suspension",
        "You can now use all platform features.",
    ),
}

_RESTORED_CAPABILITIES = (
    "• Create posts and comments\n"
    "• Upload tracks\n"
    "• Interact with other users\n"
)

_GOOD_STANDING = "Please continue to follow our community guidelines to maintain your account in good standing. "


@dataclass(slots=True, frozen=True)
class NotificationContent:
    title: str
    message: str
    priority: int
    type: str = NOTIFICATION_TYPE


@dataclass(slots=True)
class NotificationTemplateParams:
    action_type: ModerationActionType
    reason: str
    target_type: Optional[str] = None
    duration_days: Optional[int] = None
    expires_at: Optional[datetime] = None
    custom_message: Optional[str] = None
    restriction_type: Optional[RestrictionType] = None


@dataclass(slots=True)
class OriginalActionSummary:
    reason: str
    applied_by: str
    applied_at: datetime
    duration_days: Optional[int] = None


@dataclass(slots=True)
class ReversalNotificationParams:
    reversal_type: ReversalType
    moderator_name: str
    reason: str
    original_action: Optional[OriginalActionSummary] = None
    restriction_type: Optional[RestrictionType] = None


def _format_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%B %d, %Y")


def _format_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%B %d, %Y at %H:%M UTC")


def _days(count: int) -> str:
    return f"{count} day{'s' if count > 1 else ''}"


def _content_removed_message(params: NotificationTemplateParams) -> str:
    label = params.target_type if params.target_type in ("post", "comment", "track", "album") else "content"
    message = f"Your {label} has been removed for violating our community guidelines.\n\n"
    message += f"Reason: {params.reason}\n\n"
    if params.custom_message:
        message += f"Additional information: {params.custom_message}\n\n"
    message += "If you believe this was done in error, you may appeal this decision. "
    message += "Please review our community guidelines to avoid future violations."
    return message


def _warning_message(params: NotificationTemplateParams) -> str:
    message = "You have received a warning for violating our community guidelines.\n\n"
    message += f"Reason: {params.reason}\n\n"
    if params.custom_message:
        message += f"Message from moderator: {params.custom_message}\n\n"
    message += "Please review our community guidelines to avoid future violations. "
    message += "Repeated violations may result in account restrictions or suspension.\n\n"
    message += "If you believe this warning was issued in error, you may appeal this decision."
    return message


def _suspension_message(params: NotificationTemplateParams) -> str:
    message = "Your account has been suspended for violating our community guidelines.\n\n"
    message += f"Reason: {params.reason}\n\n"
    if params.duration_days:
        message += f"Duration: {_days(params.duration_days)}\n"
        if params.expires_at:
            message += f"Your account will be automatically restored on {_format_datetime(params.expires_at)}.\n\n"
    else:
        message += "Duration: Permanent\n\n"
        message += "This is a permanent suspension. Your account will not be automatically restored.\n\n"
    if params.custom_message:
        message += f"Additional information: {params.custom_message}\n\n"
    message += "During the suspension period, you will not be able to:\n"
    message += _RESTORED_CAPABILITIES + "\n"
    message += "If you believe this suspension was issued in error, you may appeal this decision."
    return message


def _ban_message(params: NotificationTemplateParams) -> str:
    message = (
        "Your account has been permanently suspended for severe or repeated violations "
        "of our community guidelines.\n\n"
    )
    message += f"Reason: {params.reason}\n\n"
    if params.custom_message:
        message += f"Additional information: {params.custom_message}\n\n"
    message += "This is a permanent suspension. Your account will not be restored.\n\n"
    message += "If you believe this suspension was issued in error, you may appeal this decision within 30 days."
    return message


def _restriction_message(params: NotificationTemplateParams) -> str:
    label, description = "Unknown restriction", ""
    if params.restriction_type is not None:
        label, description, _, _ = _RESTRICTION_COPY[params.restriction_type]
    message = f"A restriction has been applied to your account: {label}\n\n"
    message += f"Reason: {params.reason}\n\n"
    if description:
        message += f"{description}\n\n"
    if params.duration_days:
        message += f"Duration: {_days(params.duration_days)}\n"
        if params.expires_at:
            message += f"This restriction will be automatically lifted on {_format_datetime(params.expires_at)}.\n\n"
    else:
        message += "Duration: Permanent\n\n"
        message += "This restriction will remain in place until manually removed by a moderator.\n\n"
    if params.custom_message:
        message += f"Additional information: {params.custom_message}\n\n"
    message += "Please review our community guidelines to avoid future violations. "
    message += "If you believe this restriction was applied in error, you may appeal this decision."
    return message


def _generic_message(params: NotificationTemplateParams) -> str:
    return (
        "A moderation action has been taken on your account.\n\n"
        f"Reason: {params.reason}\n\n"
        "If you believe this was done in error, you may appeal this decision."
    )


_MESSAGE_BUILDERS: dict[ModerationActionType, Callable[[NotificationTemplateParams], str]] = {
    ModerationActionType.CONTENT_REMOVED: _content_removed_message,
    ModerationActionType.USER_WARNED: _warning_message,
    ModerationActionType.USER_SUSPENDED: _suspension_message,
    ModerationActionType.USER_BANNED: _ban_message,
    ModerationActionType.RESTRICTION_APPLIED: _restriction_message,
}


def generate_moderation_notification(params: NotificationTemplateParams) -> NotificationContent:
    """Build the title, body and priority shown to the user an action was taken against."""
    builder = _MESSAGE_BUILDERS.get(params.action_type, _generic_message)
    return NotificationContent(
        title=_ACTION_TITLES.get(params.action_type, "Moderation Action"),
        message=builder(params),
        priority=_ACTION_PRIORITIES.get(params.action_type, 1),
    )


def _original_details(heading: str, original: OriginalActionSummary, *, type_label: str | None = None) -> str:
    lines = f"{heading}:\n"
    if type_label:
        lines += f"• Type: {type_label}\n"
    lines += f"• Reason: {original.reason}\n"
    lines += f"• Applied by: {original.applied_by}\n"
    lines += f"• Applied on: {_format_date(original.applied_at)}\n"
    if original.duration_days:
        lines += f"• Duration: {_days(original.duration_days)}\n"
    return lines + "\n"


def _suspension_lifted_message(params: ReversalNotificationParams) -> str:
    message = "Good news! Your account suspension has been lifted by a moderator.\n\n"
    message += f"Lifted by: {params.moderator_name}\n"
    message += f"Reason for reversal: {params.reason}\n\n"
    if params.original_action:
        message += _original_details("Original Suspension Details", params.original_action)
    message += "Your account has been fully restored. You can now:\n"
    message += _RESTORED_CAPABILITIES + "\n"
    message += _GOOD_STANDING + "Thank you for your understanding."
    return message


def _ban_removed_message(params: ReversalNotificationParams) -> str:
    message = "Your permanent account suspension has been removed by an administrator.\n\n"
    message += f"Removed by: {params.moderator_name}\n"
    message += f"Reason for reversal: {params.reason}\n\n"
    if params.original_action:
        original = OriginalActionSummary(
            reason=params.original_action.reason,
            applied_by=params.original_action.applied_by,
            applied_at=params.original_action.applied_at,
        )
        message += _original_details("Original Permanent Suspension Details", original)
    message += "Your account has been fully restored. You can now:\n"
    message += _RESTORED_CAPABILITIES + "• Access all platform features\n\n"
    message += "This is a second chance. Please carefully review and follow our community guidelines "
    message += "to maintain your account in good standing. Future violations may result in permanent action. "
    message += "Thank you for your understanding."
    return message


def _restriction_removed_message(params: ReversalNotificationParams) -> str:
    label, capability = "restriction", ""
    if params.restriction_type is not None:
        _, _, label, capability = _RESTRICTION_COPY[params.restriction_type]
    message = f"Your {label} has been removed by a moderator.\n\n"
    message += f"Removed by: {params.moderator_name}\n"
    message += f"Reason for reversal: {params.reason}\n\n"
    if params.original_action:
        message += _original_details("Original Restriction Details", params.original_action, type_label=label)
    if capability:
        message += f"{capability}\n\n"
    message += _GOOD_STANDING + "Thank you for your understanding."
    return message


_REVERSAL_BUILDERS: dict[ReversalType, Callable[[ReversalNotificationParams], str]] = {
    ReversalType.SUSPENSION_LIFTED: _suspension_lifted_message,
    ReversalType.BAN_REMOVED: _ban_removed_message,
    ReversalType.RESTRICTION_REMOVED: _restriction_removed_message,
}


def generate_reversal_notification(params: ReversalNotificationParams) -> NotificationContent:
    return NotificationContent(
        title=_REVERSAL_TITLES[params.reversal_type],
        message=_REVERSAL_BUILDERS[params.reversal_type](params),
        priority=2,
    )


def generate_revocation_notification(action: ModerationAction, reason: str) -> NotificationContent:
    title, prefix = _REVOCATION_COPY.get(
        action.action_type,
        ("Moderation Action Revoked", "A moderation action on your account has been revoked"),
    )
    message = (
        f"{prefix}.\n\nReason: {reason}\n\nOriginal action reason: {action.reason}\n\n"
        f"{_GOOD_STANDING.strip()}"
    )
    return NotificationContent(title=title, message=message, priority=2)


def generate_expiration_notification(restriction_type: RestrictionType) -> NotificationContent:
    if restriction_type is RestrictionType.SUSPENDED:
        title = "Account Suspension Expired"
        message = "Your account suspension has expired. Your account has been restored.\n\n"
        message += "You can now:\n" + _RESTORED_CAPABILITIES + "\n"
    else:
        title = "Account Restriction Lifted"
        _, _, label, _ = _RESTRICTION_COPY[restriction_type]
        message = f"Your {label} has expired and has been lifted.\n\n"
        message += "You can now use all platform features normally.\n\n"
    message += _GOOD_STANDING + "Thank you for your cooperation."
    return NotificationContent(title=title, message=message, priority=2)


@dataclass
class NotificationDispatcher:
    """Persists rendered notifications; callers decide whether failures are fatal."""

    repository: NotificationRepository
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    async def send(
        self,
        user_id: str,
        content: NotificationContent,
        *,
        data: Mapping[str, Any] | None = None,
        related_notification_id: str | None = None,
    ) -> str:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            type=content.type,
            title=content.title,
            message=content.message,
            created_at=self.clock(),
            data={"priority": content.priority, **dict(data or {})},
            related_notification_id=related_notification_id,
        )
        stored = await self.repository.create(notification)
        logger.info(
            "moderation notification stored",
            extra={"notification_id": stored.id, "recipient_id": user_id, "title": content.title},
        )
        return stored.id
