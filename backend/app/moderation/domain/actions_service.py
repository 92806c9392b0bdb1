"""Moderation action executor, restrictions and suspension state."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from app.moderation.domain.authorization import ActorContext, require_moderator
from app.moderation.domain.errors import (
    ModerationValidationError,
    NotFoundError,
    RateLimitExceededError,
    UnauthorizedError,
    wrap_unexpected,
)
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_THRESHOLD,
    PERMANENT_SUSPENSION_UNTIL,
    VERIFICATION_NOTES_MAX_LENGTH,
    ActionMetadata,
    AlbumCascade,
    CascadedTrack,
    EvidenceVerification,
    ModerationAction,
    ModerationActionType,
    Report,
    ReportStatus,
    ReportType,
    RestrictionType,
    SecurityEventType,
    UserRestriction,
    UserRole,
)
from app.moderation.domain.notifications import (
    NotificationDispatcher,
    NotificationTemplateParams,
    generate_moderation_notification,
)
from app.moderation.domain.repositories import (
    ActionRepository,
    ContentRepository,
    ProfileRepository,
    ReportRepository,
    RestrictionRepository,
    UnitOfWork,
)
from app.moderation.domain.security import SecurityEventRecorder
from app.moderation.domain.validation import (
    INTERNAL_NOTES_MAX_LENGTH,
    NOTIFICATION_MESSAGE_MAX_LENGTH,
    REASON_MAX_LENGTH,
    coerce_enum,
    is_valid_uuid,
    require_uuid,
    sanitize_text,
    validate_duration,
    validate_text_length,
)
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)

ACTION_PERMISSIONS: dict[str, RestrictionType] = {
    "post": RestrictionType.POSTING_DISABLED,
    "comment": RestrictionType.COMMENTING_DISABLED,
    "upload": RestrictionType.UPLOAD_DISABLED,
}

REMOVABLE_CONTENT = (ReportType.POST.value, ReportType.COMMENT.value, ReportType.TRACK.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CascadeOptions:
    remove_album: bool = False
    remove_tracks: bool = False


@dataclass(slots=True)
class ModerationActionParams:
    report_id: Any
    action_type: Any
    target_user_id: Any
    reason: str
    target_type: Optional[Any] = None
    target_id: Optional[str] = None
    duration_days: Optional[int] = None
    internal_notes: Optional[str] = None
    notification_message: Optional[str] = None
    restriction_type: Optional[Any] = None
    cascade: Optional[CascadeOptions] = None
    evidence_verified: bool = False
    verification_notes: Optional[str] = None


@dataclass(slots=True)
class ActionResult:
    action: ModerationAction
    cascaded_actions: list[ModerationAction] = field(default_factory=list)

    @property
    def records_created(self) -> int:
        return 1 + len(self.cascaded_actions)


@dataclass(slots=True, frozen=True)
class PermissionCheck:
    allowed: bool
    reason: Optional[str] = None


@dataclass(slots=True, frozen=True)
class SuspensionStatus:
    is_suspended: bool
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    is_permanent: bool = False
    days_remaining: Optional[int] = None


@dataclass(slots=True)
class _ValidatedAction:
    report_id: str
    action_type: ModerationActionType
    target_user_id: str
    reason: str
    target_type: Optional[ReportType]
    target_id: Optional[str]
    duration_days: Optional[int]
    internal_notes: Optional[str]
    notification_message: Optional[str]
    restriction_type: Optional[RestrictionType]


def validate_action_params(params: ModerationActionParams) -> _ValidatedAction:
    report_id = require_uuid(params.report_id, message="Invalid report ID format", field_name="report_id")
    action_type = coerce_enum(
        ModerationActionType, params.action_type, message="Invalid action type", field_name="action_type"
    )
    target_user_id = require_uuid(
        params.target_user_id, message="Invalid target user ID format", field_name="target_user_id"
    )
    target_type = None
    if params.target_type:
        target_type = coerce_enum(ReportType, params.target_type, message="Invalid target type", field_name="target_type")
    if params.target_id and not is_valid_uuid(params.target_id):
        raise ModerationValidationError("Invalid target ID format", details={"target_id": params.target_id})
    if not (params.reason or "").strip():
        raise ModerationValidationError("Reason is required for moderation actions")
    validate_text_length(params.reason, REASON_MAX_LENGTH, "Reason")
    validate_duration(params.duration_days)
    if params.internal_notes:
        validate_text_length(params.internal_notes, INTERNAL_NOTES_MAX_LENGTH, "Internal notes")
    if params.notification_message:
        validate_text_length(params.notification_message, NOTIFICATION_MESSAGE_MAX_LENGTH, "Notification message")
    if params.verification_notes and len(params.verification_notes) > VERIFICATION_NOTES_MAX_LENGTH:
        raise ModerationValidationError(
            "Verification notes must be 500 characters or less",
            details={"length": len(params.verification_notes), "max_length": VERIFICATION_NOTES_MAX_LENGTH},
        )
    restriction_type = None
    if params.restriction_type:
        restriction_type = coerce_enum(
            RestrictionType, params.restriction_type, message="Invalid restriction type", field_name="restriction_type"
        )
    if action_type is ModerationActionType.RESTRICTION_APPLIED and restriction_type is None:
        raise ModerationValidationError("Restriction type is required for restriction actions")
    return _ValidatedAction(
        report_id=report_id,
        action_type=action_type,
        target_user_id=target_user_id,
        reason=sanitize_text(params.reason),
        target_type=target_type,
        target_id=params.target_id or None,
        duration_days=params.duration_days,
        internal_notes=sanitize_text(params.internal_notes) if params.internal_notes else None,
        notification_message=sanitize_text(params.notification_message) if params.notification_message else None,
        restriction_type=restriction_type,
    )


def _restriction_label(restriction_type: RestrictionType) -> str:
    return restriction_type.value.replace("_", " ", 1)


@dataclass
class ActionService:
    actions: ActionRepository
    reports: ReportRepository
    restrictions: RestrictionRepository
    profiles: ProfileRepository
    content: ContentRepository
    security: SecurityEventRecorder
    uow: UnitOfWork
    notifier: NotificationDispatcher | None = None
    clock: Callable[[], datetime] = _now

    # --- moderation actions ------------------------------------------------

    @wrap_unexpected("taking moderation action")
    async def take_moderation_action(self, actor: ActorContext, params: ModerationActionParams) -> ActionResult:
        checked = validate_action_params(params)
        require_moderator(actor, "Only moderators and admins can take moderation actions")
        started = time.perf_counter()

        since = self.clock() - timedelta(seconds=settings.action_rate_window_seconds)
        action_count = await self.actions.count_by_moderator(actor.user_id, since=since)
        limit = settings.action_rate_limit
        if action_count >= limit:
            await self.security.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                actor.user_id,
                scope="moderation_action",
                action_count=action_count,
                limit=limit,
                attempted_action=checked.action_type.value,
                report_id=checked.report_id,
            )
            raise RateLimitExceededError(
                f"You have exceeded the moderation action limit of {limit} actions per hour. Please try again later.",
                details={"action_count": action_count, "limit": limit},
            )

        if checked.action_type is ModerationActionType.USER_BANNED and not actor.is_admin:
            raise UnauthorizedError(
                "Only admins can permanently suspend users",
                details={"user_id": actor.user_id},
            )
        await self._ensure_can_act_on(actor, checked.target_user_id, attempted=checked.action_type.value)

        report = await self.reports.get(checked.report_id)
        if report is None:
            raise NotFoundError("Report not found", details={"report_id": checked.report_id})
        if checked.target_type is not None and checked.target_type is not report.report_type:
            raise ModerationValidationError(
                "Target type does not match report type",
                details={"target_type": checked.target_type.value, "report_type": report.report_type.value},
            )

        now = self.clock()
        expires_at = now + timedelta(days=checked.duration_days) if checked.duration_days else None
        metadata = ActionMetadata()
        if params.evidence_verified or params.verification_notes is not None:
            metadata = replace(
                metadata,
                verification=EvidenceVerification(
                    verified=params.evidence_verified,
                    notes=params.verification_notes or None,
                    verified_at=now,
                    verified_by=actor.user_id,
                ),
            )

        base = ModerationAction(
            id=str(uuid4()),
            moderator_id=actor.user_id,
            target_user_id=checked.target_user_id,
            action_type=checked.action_type,
            reason=checked.reason,
            created_at=now,
            target_type=checked.target_type.value if checked.target_type else None,
            target_id=checked.target_id,
            duration_days=checked.duration_days,
            expires_at=expires_at,
            related_report_id=report.id,
            internal_notes=checked.internal_notes,
            metadata=metadata,
        )

        kind = checked.action_type
        # content deletion, action rows, restriction and report status commit together
        async with self.uow.transaction():
            if kind is ModerationActionType.CONTENT_REMOVED:
                result = await self._remove_content(base, report, params.cascade)
            elif kind is ModerationActionType.USER_SUSPENDED:
                result = ActionResult(await self._suspend(base, until=expires_at, actor=actor))
            elif kind is ModerationActionType.USER_BANNED:
                banned = replace(base, duration_days=None, expires_at=None)
                result = ActionResult(await self._suspend(banned, until=None, actor=actor))
            elif kind is ModerationActionType.RESTRICTION_APPLIED and checked.restriction_type is not None:
                await self._reject_existing_restriction(checked.target_user_id, checked.restriction_type)
                action = await self.actions.create(base)
                await self._create_restriction(
                    user_id=checked.target_user_id,
                    restriction_type=checked.restriction_type,
                    reason=checked.reason,
                    applied_by=actor.user_id,
                    expires_at=expires_at,
                    related_action_id=action.id,
                )
                result = ActionResult(action)
            else:
                result = ActionResult(await self.actions.create(base))

            await self._resolve_report(report, actor=actor, checked=checked)

        if kind is not ModerationActionType.CONTENT_APPROVED:
            result.action = await self._notify_target(result.action, checked, expires_at=expires_at)

        obs_metrics.MOD_ACTIONS_TOTAL.labels(action_type=kind.value).inc(result.records_created)
        obs_metrics.MOD_ACTION_LATENCY_SECONDS.labels(action_type=kind.value).observe(time.perf_counter() - started)
        logger.info(
            "moderation action taken",
            extra={
                "action_id": result.action.id,
                "action_type": kind.value,
                "report_id": report.id,
                "records_created": result.records_created,
            },
        )
        return result

    async def _ensure_can_act_on(self, actor: ActorContext, target_user_id: str, *, attempted: str) -> None:
        if actor.is_admin:
            return
        if await self.profiles.get_role(target_user_id) is not UserRole.ADMIN:
            return
        await self.security.record(
            SecurityEventType.UNAUTHORIZED_ACTION_ON_ADMIN,
            actor.user_id,
            target_user_id=target_user_id,
            attempted_action=attempted,
        )
        raise UnauthorizedError(
            "Moderators cannot take actions on admin accounts",
            details={"target_user_id": target_user_id},
        )

    async def _remove_content(
        self, base: ModerationAction, report: Report, cascade: CascadeOptions | None
    ) -> ActionResult:
        target_type = base.target_type or report.report_type.value
        target_id = base.target_id or report.target_id
        base = replace(base, target_type=target_type, target_id=target_id)
        if target_type != ReportType.ALBUM.value:
            if target_type in REMOVABLE_CONTENT:
                await self.content.delete_content(target_type, target_id)
            return ActionResult(await self.actions.create(base))

        options = cascade or CascadeOptions()
        if not options.remove_album and not options.remove_tracks:
            raise ModerationValidationError(
                "At least one of removeAlbum or removeTracks must be selected for album removal",
                details={"remove_album": options.remove_album, "remove_tracks": options.remove_tracks},
            )
        album = await self.content.get_album(target_id)
        if album is None:
            raise NotFoundError("Album not found", details={"album_id": target_id})

        track_ids = tuple(await self.content.delete_album(album.id, delete_tracks=options.remove_tracks))
        if not options.remove_tracks:
            obs_metrics.MOD_CASCADE_REMOVALS_TOTAL.labels(mode="selective").inc()
            parent = replace(
                base,
                metadata=replace(base.metadata, cascade=AlbumCascade(cascading_action=False)),
            )
            return ActionResult(await self.actions.create(parent))

        obs_metrics.MOD_CASCADE_REMOVALS_TOTAL.labels(mode="cascading").inc()
        parent = await self.actions.create(
            replace(
                base,
                metadata=replace(
                    base.metadata,
                    cascade=AlbumCascade(cascading_action=True, affected_tracks=track_ids, track_count=len(track_ids)),
                ),
            )
        )
        children = []
        for track_id in track_ids:
            child = replace(
                base,
                id=str(uuid4()),
                target_type=ReportType.TRACK.value,
                target_id=track_id,
                metadata=ActionMetadata(cascade=CascadedTrack(parent_album_action=parent.id, parent_album_id=album.id)),
            )
            children.append(await self.actions.create(child))
        return ActionResult(parent, children)

    async def _suspend(
        self, base: ModerationAction, *, until: datetime | None, actor: ActorContext
    ) -> ModerationAction:
        action = await self.actions.create(base)
        await self.profiles.set_suspension(
            base.target_user_id,
            until=until or PERMANENT_SUSPENSION_UNTIL,
            reason=base.reason,
        )
        await self._create_restriction(
            user_id=base.target_user_id,
            restriction_type=RestrictionType.SUSPENDED,
            reason=base.reason,
            applied_by=actor.user_id,
            expires_at=until,
            related_action_id=action.id,
        )
        return action

    async def _resolve_report(self, report: Report, *, actor: ActorContext, checked: _ValidatedAction) -> None:
        approved = checked.action_type is ModerationActionType.CONTENT_APPROVED
        now = self.clock()
        await self.reports.update(
            replace(
                report,
                status=ReportStatus.DISMISSED if approved else ReportStatus.RESOLVED,
                reviewed_by=actor.user_id,
                reviewed_at=now,
                resolution_notes=checked.internal_notes,
                action_taken=checked.action_type.value,
                updated_at=now,
            )
        )

    async def _notify_target(
        self, action: ModerationAction, checked: _ValidatedAction, *, expires_at: datetime | None
    ) -> ModerationAction:
        if self.notifier is None:
            return action
        content = generate_moderation_notification(
            NotificationTemplateParams(
                action_type=action.action_type,
                reason=action.reason,
                target_type=action.target_type,
                duration_days=action.duration_days,
                expires_at=expires_at,
                custom_message=checked.notification_message,
                restriction_type=checked.restriction_type,
            )
        )
        try:
            notification_id = await self.notifier.send(
                action.target_user_id,
                content,
                data={
                    "moderation_action": action.action_type.value,
                    "action_id": action.id,
                    "reason": action.reason,
                    "duration_days": action.duration_days,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                    "restriction_type": checked.restriction_type.value if checked.restriction_type else None,
                },
            )
            return await self.actions.update(
                replace(action, notification_sent=True, notification_id=notification_id)
            )
        except Exception:  # noqa: BLE001
            obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind="action").inc()
            logger.exception(
                "failed to send moderation notification",
                extra={"action_id": action.id, "action_type": action.action_type.value},
            )
            return action

    # --- restrictions ------------------------------------------------------

    async def _reject_existing_restriction(self, user_id: str, restriction_type: RestrictionType) -> None:
        now = self.clock()
        for existing in await self.restrictions.list_for_user(user_id):
            if existing.restriction_type is not restriction_type or not existing.is_in_effect(now=now):
                continue
            info = f" (expires {existing.expires_at.isoformat()})" if existing.expires_at else " (permanent)"
            raise ModerationValidationError(
                f"This user already has an active {_restriction_label(restriction_type)} restriction{info}. "
                "Please remove the existing restriction before applying a new one.",
                details={
                    "existing_restriction_id": existing.id,
                    "existing_reason": existing.reason,
                    "expires_at": existing.expires_at.isoformat() if existing.expires_at else None,
                },
            )

    async def _create_restriction(
        self,
        *,
        user_id: str,
        restriction_type: RestrictionType,
        reason: str,
        applied_by: str,
        expires_at: datetime | None,
        related_action_id: str | None,
    ) -> UserRestriction:
        return await self.restrictions.create(
            UserRestriction(
                id=str(uuid4()),
                user_id=user_id,
                restriction_type=restriction_type,
                reason=reason,
                applied_by=applied_by,
                created_at=self.clock(),
                expires_at=expires_at,
                related_action_id=related_action_id,
            )
        )

    @wrap_unexpected("applying restriction")
    async def apply_restriction(
        self,
        actor: ActorContext,
        user_id: str,
        restriction_type: Any,
        reason: str,
        *,
        duration_days: int | None = None,
        related_action_id: str | None = None,
        send_notification: bool = True,
    ) -> UserRestriction:
        """Apply a standalone restriction outside of a report review."""

        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        kind = coerce_enum(RestrictionType, restriction_type, message="Invalid restriction type", field_name="restriction_type")
        if not (reason or "").strip():
            raise ModerationValidationError("Reason is required for restrictions")
        validate_text_length(reason, REASON_MAX_LENGTH, "Reason")
        validate_duration(duration_days)
        reason = sanitize_text(reason)

        if not actor.is_admin and await self.profiles.get_role(user_id) is UserRole.ADMIN:
            await self.security.record(
                SecurityEventType.UNAUTHORIZED_ACTION_ON_ADMIN,
                actor.user_id,
                target_user_id=user_id,
                restriction_type=kind.value,
            )
            raise UnauthorizedError(
                "Moderators cannot apply restrictions to admin accounts",
                details={"target_user_id": user_id},
            )
        require_moderator(actor, "Only moderators and admins can apply restrictions")
        await self._reject_existing_restriction(user_id, kind)

        expires_at = self.clock() + timedelta(days=duration_days) if duration_days else None
        restriction = await self._create_restriction(
            user_id=user_id,
            restriction_type=kind,
            reason=reason,
            applied_by=actor.user_id,
            expires_at=expires_at,
            related_action_id=related_action_id,
        )
        if send_notification and self.notifier is not None:
            content = generate_moderation_notification(
                NotificationTemplateParams(
                    action_type=ModerationActionType.RESTRICTION_APPLIED,
                    reason=reason,
                    duration_days=duration_days,
                    expires_at=expires_at,
                    restriction_type=kind,
                )
            )
            try:
                await self.notifier.send(
                    user_id,
                    content,
                    data={"moderation_action": "restriction_applied", "restriction_id": restriction.id},
                )
            except Exception:  # noqa: BLE001
                obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind="restriction").inc()
                logger.exception("failed to send restriction notification", extra={"restriction_id": restriction.id})
        return restriction

    @wrap_unexpected("checking restrictions")
    async def check_user_restrictions(self, user_id: str) -> Sequence[UserRestriction]:
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        now = self.clock()
        return [item for item in await self.restrictions.list_for_user(user_id) if item.is_in_effect(now=now)]

    @wrap_unexpected("getting user active restrictions")
    async def get_user_active_restrictions(self, user_id: str) -> Sequence[UserRestriction]:
        return await self.check_user_restrictions(user_id)

    @wrap_unexpected("checking user permissions")
    async def can_user_perform_action(self, user_id: str, action: str) -> PermissionCheck:
        if action not in ACTION_PERMISSIONS:
            raise ModerationValidationError("Invalid action", details={"action": action})
        active = {item.restriction_type for item in await self.check_user_restrictions(user_id)}
        if RestrictionType.SUSPENDED in active:
            return PermissionCheck(allowed=False, reason="Your account is suspended")
        if ACTION_PERMISSIONS[action] in active:
            return PermissionCheck(allowed=False, reason=f"Your account has a {_restriction_label(ACTION_PERMISSIONS[action])} restriction")
        return PermissionCheck(allowed=True)

    @wrap_unexpected("getting user suspension status")
    async def get_user_suspension_status(self, user_id: str) -> SuspensionStatus:
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        profile = await self.profiles.get_profile(user_id)
        if profile is None or not profile.suspension_reason:
            return SuspensionStatus(is_suspended=False)
        until = profile.suspended_until
        if until is None or until > PERMANENT_SUSPENSION_THRESHOLD:
            return SuspensionStatus(
                is_suspended=True,
                suspended_until=until,
                suspension_reason=profile.suspension_reason,
                is_permanent=True,
            )
        now = self.clock()
        if until <= now:
            return SuspensionStatus(
                is_suspended=False,
                suspended_until=until,
                suspension_reason=profile.suspension_reason,
                days_remaining=0,
            )
        return SuspensionStatus(
            is_suspended=True,
            suspended_until=until,
            suspension_reason=profile.suspension_reason,
            days_remaining=math.ceil((until - now).total_seconds() / 86400),
        )
