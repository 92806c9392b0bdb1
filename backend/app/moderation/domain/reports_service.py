"""User reports, moderator flags and the review queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from app.moderation.domain.authorization import ActorContext, require_moderator
from app.moderation.domain.errors import ModerationValidationError, RateLimitExceededError, wrap_unexpected
from app.moderation.domain.models import (
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    SecurityEventType,
    UserRole,
)
from app.moderation.domain.notifications import NotificationContent
from app.moderation.domain.repositories import ContentRepository, ProfileRepository, ReportQuery, ReportRepository
from app.moderation.domain.security import SecurityEventRecorder, StaffAlerter
from app.moderation.domain.validation import (
    DESCRIPTION_MAX_LENGTH,
    INTERNAL_NOTES_MAX_LENGTH,
    calculate_priority,
    coerce_enum,
    parse_timestamp,
    require_uuid,
    sanitize_text,
    validate_text_length,
)
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)

REASON_LABELS: dict[ReportReason, str] = {
    ReportReason.SPAM: "Spam or Misleading Content",
    ReportReason.HARASSMENT: "Harassment or Bullying",
    ReportReason.HATE_SPEECH: "Hate Speech or Discrimination",
    ReportReason.INAPPROPRIATE_CONTENT: "Inappropriate or Offensive Content",
    ReportReason.COPYRIGHT_VIOLATION: "Copyright Violation",
    ReportReason.IMPERSONATION: "Impersonation or Identity Theft",
    ReportReason.SELF_HARM: "Self-Harm or Suicide Content",
    ReportReason.OTHER: "Other Violation",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def content_label(report_type: ReportType) -> str:
    return report_type.value


@dataclass(slots=True)
class ReportParams:
    report_type: Any
    target_id: Any
    reason: Any
    description: Optional[str] = None


@dataclass(slots=True)
class ModeratorFlagParams:
    report_type: Any
    target_id: Any
    reason: Any
    internal_notes: Optional[str] = None
    priority: Optional[int] = None


@dataclass(slots=True)
class QueueFilters:
    status: Optional[ReportStatus] = None
    priority: Optional[int] = None
    moderator_flagged: Optional[bool] = None
    report_type: Optional[ReportType] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RateLimitStatus:
    allowed: bool
    count: int
    limit: int


def _validate_common(report_type: Any, reason: Any, target_id: Any) -> tuple[ReportType, ReportReason, str]:
    kind = coerce_enum(ReportType, report_type, message="Invalid report type", field_name="report_type")
    cause = coerce_enum(ReportReason, reason, message="Invalid report reason", field_name="reason")
    target = require_uuid(target_id, message="Invalid target ID format", field_name="target_id")
    return kind, cause, target


def validate_report_params(params: ReportParams) -> tuple[ReportType, ReportReason, str, Optional[str]]:
    """Check a user report and return its normalised fields (description sanitised)."""

    kind, cause, target = _validate_common(params.report_type, params.reason, params.target_id)
    if cause is ReportReason.OTHER and not (params.description or "").strip():
        raise ModerationValidationError(
            'Description is required when reason is "other"',
            details={"reason": cause.value},
        )
    description = None
    if params.description:
        validate_text_length(params.description, DESCRIPTION_MAX_LENGTH, "Description")
        description = sanitize_text(params.description)
    return kind, cause, target, description


def validate_flag_params(params: ModeratorFlagParams) -> tuple[ReportType, ReportReason, str, str]:
    kind, cause, target = _validate_common(params.report_type, params.reason, params.target_id)
    if not (params.internal_notes or "").strip():
        raise ModerationValidationError("Internal notes are required for moderator flags")
    validate_text_length(params.internal_notes, INTERNAL_NOTES_MAX_LENGTH, "Internal notes")
    if params.priority is not None and not 1 <= params.priority <= 5:
        raise ModerationValidationError(
            "Priority must be between 1 and 5",
            details={"priority": params.priority},
        )
    return kind, cause, target, sanitize_text(params.internal_notes)


def high_priority_alert(report: Report) -> NotificationContent:
    critical = report.priority == 1
    label = "P1 Critical" if critical else "P2 High Priority"
    marker = "🚨" if critical else "⚠️"
    title = (
        f"{marker} {label} Report: {report.report_type.value.capitalize()} - "
        f"{REASON_LABELS.get(report.reason, report.reason.value)}"
    )
    message = "Requires immediate attention" if critical else "Review needed"
    return NotificationContent(title=title, message=message, priority=report.priority)


@dataclass
class ReportService:
    reports: ReportRepository
    profiles: ProfileRepository
    content: ContentRepository
    security: SecurityEventRecorder
    alerter: StaffAlerter | None = None
    clock: Callable[[], datetime] = _now

    async def check_duplicate_report(
        self, reporter_id: str, report_type: ReportType, target_id: str
    ) -> Report | None:
        """Most recent report by ``reporter_id`` on the same target inside the duplicate window."""

        since = self.clock() - timedelta(hours=settings.duplicate_report_window_hours)
        return await self.reports.find_recent(reporter_id, report_type, target_id, since=since)

    async def check_report_rate_limit(self, reporter_id: str) -> RateLimitStatus:
        since = self.clock() - timedelta(hours=settings.report_rate_window_hours)
        count = await self.reports.count_by_reporter(reporter_id, since=since)
        limit = settings.report_rate_limit
        return RateLimitStatus(allowed=count < limit, count=count, limit=limit)

    async def _reported_user_id(self, report_type: ReportType, target_id: str) -> str | None:
        if report_type is ReportType.USER:
            return target_id
        return await self.content.get_owner(report_type, target_id)

    async def _reject_duplicate(
        self, actor: ActorContext, report_type: ReportType, target_id: str, *, moderator_flag: bool = False
    ) -> None:
        existing = await self.check_duplicate_report(actor.user_id, report_type, target_id)
        if existing is None:
            return
        original = existing.created_at.isoformat()
        extra: dict[str, Any] = {"moderator_flag": True} if moderator_flag else {}
        await self.security.record(
            SecurityEventType.DUPLICATE_REPORT_ATTEMPT,
            actor.user_id,
            report_type=report_type.value,
            target_id=target_id,
            original_report_date=original,
            **extra,
        )
        obs_metrics.MOD_REPORTS_TOTAL.labels(report_type=report_type.value, outcome="duplicate").inc()
        raise ModerationValidationError(
            f"You have already reported this {content_label(report_type)} recently. "
            "Please wait 24 hours before reporting again.",
            details={
                "report_type": report_type.value,
                "target_id": target_id,
                "original_report_date": original,
            },
        )

    @wrap_unexpected("submitting report")
    async def submit_report(self, actor: ActorContext, params: ReportParams) -> Report:
        report_type, reason, target_id, description = validate_report_params(params)

        if report_type is ReportType.USER:
            if actor.user_id == target_id:
                raise ModerationValidationError(
                    "You cannot report your own profile",
                    details={"user_id": actor.user_id, "target_id": target_id},
                )
            reported_user_id: str | None = target_id
        else:
            reported_user_id = await self._reported_user_id(report_type, target_id)
            if reported_user_id and reported_user_id == actor.user_id:
                raise ModerationValidationError(
                    f"You cannot report your own {content_label(report_type)}",
                    details={"user_id": actor.user_id, "target_id": target_id},
                )

        if report_type is ReportType.USER and await self.profiles.get_role(target_id) is UserRole.ADMIN:
            await self.security.record(
                SecurityEventType.ADMIN_REPORT_ATTEMPT,
                actor.user_id,
                target_user_id=target_id,
                report_type=report_type.value,
                target_id=target_id,
            )
            obs_metrics.MOD_REPORTS_TOTAL.labels(report_type=report_type.value, outcome="admin_protected").inc()
            raise ModerationValidationError(
                "This account cannot be reported",
                details={"target_user_id": target_id},
            )

        await self._reject_duplicate(actor, report_type, target_id)

        rate = await self.check_report_rate_limit(actor.user_id)
        if not rate.allowed:
            await self.security.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                actor.user_id,
                report_type=report_type.value,
                report_count=rate.count,
                limit=rate.limit,
            )
            obs_metrics.MOD_REPORTS_TOTAL.labels(report_type=report_type.value, outcome="rate_limited").inc()
            raise RateLimitExceededError(
                f"You have exceeded the report limit of {rate.limit} reports per 24 hours. "
                "Please try again later.",
                details={"report_count": rate.count, "limit": rate.limit},
            )

        report = await self.reports.create(
            Report(
                id=str(uuid4()),
                reporter_id=actor.user_id,
                reported_user_id=reported_user_id,
                report_type=report_type,
                target_id=target_id,
                reason=reason,
                description=description or None,
                status=ReportStatus.PENDING,
                priority=calculate_priority(reason),
                moderator_flagged=False,
                created_at=self.clock(),
            )
        )
        obs_metrics.MOD_REPORTS_TOTAL.labels(report_type=report_type.value, outcome="created").inc()
        logger.info(
            "report submitted",
            extra={"report_id": report.id, "report_type": report_type.value, "priority": report.priority},
        )
        await self._alert_if_urgent(report)
        return report

    @wrap_unexpected("flagging content")
    async def moderator_flag_content(self, actor: ActorContext, params: ModeratorFlagParams) -> Report:
        report_type, reason, target_id, notes = validate_flag_params(params)
        require_moderator(actor, "Only moderators and admins can flag content")
        await self._reject_duplicate(actor, report_type, target_id, moderator_flag=True)

        priority = params.priority if params.priority is not None else min(calculate_priority(reason), 2)
        report = await self.reports.create(
            Report(
                id=str(uuid4()),
                reporter_id=actor.user_id,
                reported_user_id=await self._reported_user_id(report_type, target_id),
                report_type=report_type,
                target_id=target_id,
                reason=reason,
                description=notes,
                status=ReportStatus.UNDER_REVIEW,
                priority=priority,
                moderator_flagged=True,
                created_at=self.clock(),
            )
        )
        obs_metrics.MOD_REPORTS_TOTAL.labels(report_type=report_type.value, outcome="flagged").inc()
        await self._alert_if_urgent(report)
        return report

    @wrap_unexpected("fetching moderation queue")
    async def fetch_moderation_queue(
        self, actor: ActorContext, filters: QueueFilters | None = None
    ) -> Sequence[Report]:
        require_moderator(actor, "Only moderators and admins can access the moderation queue")
        filters = filters or QueueFilters()
        query = ReportQuery(
            status=filters.status,
            priority=filters.priority,
            moderator_flagged=filters.moderator_flagged,
            report_type=filters.report_type,
            created_from=parse_timestamp(filters.start_date, field_name="start_date") if filters.start_date else None,
            created_to=parse_timestamp(filters.end_date, field_name="end_date") if filters.end_date else None,
        )
        rows = await self.reports.list(query)
        return sorted(rows, key=lambda item: (not item.moderator_flagged, item.priority, item.created_at))

    async def _alert_if_urgent(self, report: Report) -> None:
        if self.alerter is None or report.priority not in (1, 2):
            return
        await self.alerter.alert(
            high_priority_alert(report),
            data={
                "report_id": report.id,
                "priority": report.priority,
                "report_type": report.report_type.value,
                "reason": report.reason.value,
                "target_id": report.target_id,
            },
            exclude=report.reporter_id,
            kind="high_priority_report",
        )
