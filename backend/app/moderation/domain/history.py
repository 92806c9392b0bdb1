"""Audit trail queries: action logs, reversal history and CSV exports."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from app.moderation.domain.authorization import ActorContext, require_admin, require_moderator
from app.moderation.domain.errors import ModerationValidationError, wrap_unexpected
from app.moderation.domain.models import ModerationAction, ModerationActionType, Report, ReportType, StateChange
from app.moderation.domain.repositories import ActionQuery, ActionRepository, ProfileRepository
from app.moderation.domain.validation import coerce_enum, is_valid_uuid, parse_timestamp, require_uuid
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)

ACTION_LOG_HEADERS = (
    "ID",
    "Moderator ID",
    "Target User ID",
    "Action Type",
    "Target Type",
    "Target ID",
    "Reason",
    "Duration (Days)",
    "Expires At",
    "Related Report ID",
    "Internal Notes",
    "Notification Sent",
    "Created At",
    "Revoked At",
    "Revoked By",
    "Reversal Reason",
    "Time to Reversal (Hours)",
)

REVERSAL_HISTORY_HEADERS = (
    "Action ID",
    "Action Type",
    "Original Moderator ID",
    "Original Moderator Username",
    "Target User ID",
    "Target Username",
    "Action Created At",
    "Action Reason",
    "Duration (Days)",
    "Revoked At",
    "Revoked By ID",
    "Revoked By Username",
    "Reversal Reason",
    "Time to Reversal (Hours)",
    "Is Self Reversal",
    "Was Reapplied",
    "Related Report ID",
)

NO_REASON = "No reason provided"
RECENT_REVERSAL_DAYS = 7
EXPORT_MAX_ROWS = 10000
TIMELINE_WINDOWS = (7, 30, 90)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class PreviousReversal:
    action_type: ModerationActionType
    reversed_at: datetime
    reversal_reason: str
    moderator_id: str


@dataclass(slots=True, frozen=True)
class PreviousReversalSummary:
    has_previous_reversals: bool
    reversal_count: int
    most_recent_reversal: Optional[PreviousReversal] = None


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    action: ModerationAction
    is_revoked: bool
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]
    reversal_reason: Optional[str]
    time_between_action_and_reversal: Optional[timedelta]
    state_changes: tuple[StateChange, ...]
    was_reapplied: bool


@dataclass(slots=True, frozen=True)
class ReversalHistoryEntry:
    action: ModerationAction
    revoked_at: datetime
    revoked_by: str
    reversal_reason: Optional[str]
    time_between_action_and_reversal: timedelta
    is_self_reversal: bool
    moderator_username: Optional[str]
    revoked_by_username: Optional[str]
    target_username: Optional[str]
    state_changes: tuple[StateChange, ...]
    was_reapplied: bool


@dataclass(slots=True)
class ReversalHistoryFilters:
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    moderator_id: Optional[str] = None
    action_type: Optional[str] = None
    reversal_reason: Optional[str] = None
    target_user_id: Optional[str] = None
    revoked_by: Optional[str] = None


@dataclass(slots=True)
class ActionLogFilters:
    action_type: Optional[str] = None
    moderator_id: Optional[str] = None
    target_user_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    # matches either the target user id or the target content id
    search_query: Optional[str] = None
    reversed_only: bool = False
    non_reversed_only: bool = False
    recently_reversed: bool = False
    expired_only: bool = False
    non_expired_only: bool = False


@dataclass(slots=True, frozen=True)
class ViolationTimeline:
    last_7_days: int
    last_30_days: int
    last_90_days: int
    message: Optional[str]


def _hours(delta: Optional[timedelta]) -> str:
    if not delta:
        return ""
    return f"{delta.total_seconds() / 3600:.2f}"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def render_csv(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Header row unquoted, every data cell quoted."""

    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\n").writerow(headers)
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow([_cell(value) for value in row])
    return buffer.getvalue().rstrip("\n")


def _validate_reversal_filters(filters: ReversalHistoryFilters) -> ActionQuery:
    start = end = None
    if filters.start_date:
        start = parse_timestamp(
            filters.start_date,
            message="Invalid start date format. Use ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)",
            field_name="start_date",
        )
    if filters.end_date:
        end = parse_timestamp(
            filters.end_date,
            message="Invalid end date format. Use ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)",
            field_name="end_date",
        )
    if start is not None and end is not None and start > end:
        raise ModerationValidationError(
            "Start date must be before end date",
            details={"start_date": filters.start_date, "end_date": filters.end_date},
        )
    if filters.moderator_id:
        require_uuid(filters.moderator_id, message="Invalid moderator ID format", field_name="moderator_id")
    if filters.target_user_id:
        require_uuid(filters.target_user_id, message="Invalid target user ID format", field_name="target_user_id")
    if filters.revoked_by:
        require_uuid(filters.revoked_by, message="Invalid revoked by user ID format", field_name="revoked_by")
    action_types: tuple[ModerationActionType, ...] = ()
    if filters.action_type:
        action_types = (
            coerce_enum(
                ModerationActionType, filters.action_type, message="Invalid action type", field_name="action_type"
            ),
        )
    return ActionQuery(
        moderator_id=filters.moderator_id or None,
        target_user_id=filters.target_user_id or None,
        action_types=action_types,
        revoked=True,
        revoked_by=filters.revoked_by or None,
        revoked_from=start,
        revoked_to=end,
    )


@dataclass
class HistoryService:
    actions: ActionRepository
    profiles: ProfileRepository
    clock: Callable[[], datetime] = _now

    @wrap_unexpected("checking previous reversals")
    async def check_previous_reversals(self, report: Report | None) -> PreviousReversalSummary:
        if report is None or not report.id:
            raise ModerationValidationError("Invalid report")
        if report.report_type is ReportType.USER and report.reported_user_id:
            query = ActionQuery(target_user_id=report.reported_user_id, revoked=True)
        elif report.target_id:
            query = ActionQuery(target_type=report.report_type.value, target_id=report.target_id, revoked=True)
        else:
            return PreviousReversalSummary(has_previous_reversals=False, reversal_count=0)

        reversed_actions = sorted(await self.actions.list(query), key=lambda item: item.revoked_at, reverse=True)
        if not reversed_actions:
            return PreviousReversalSummary(has_previous_reversals=False, reversal_count=0)
        latest = reversed_actions[0]
        return PreviousReversalSummary(
            has_previous_reversals=True,
            reversal_count=len(reversed_actions),
            most_recent_reversal=PreviousReversal(
                action_type=latest.action_type,
                reversed_at=latest.revoked_at,
                reversal_reason=latest.reversal_reason or NO_REASON,
                moderator_id=latest.revoked_by or "",
            ),
        )

    @wrap_unexpected("getting user moderation history")
    async def get_user_moderation_history(self, user_id: str, include_revoked: bool = True) -> list[HistoryEntry]:
        """Every action taken against ``user_id``, oldest first."""

        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        query = ActionQuery(target_user_id=user_id, revoked=None if include_revoked else False)
        rows = sorted(await self.actions.list(query), key=lambda item: item.created_at)
        entries: list[HistoryEntry] = []
        for action in rows:
            elapsed = action.revoked_at - action.created_at if action.revoked_at is not None else None
            entries.append(
                HistoryEntry(
                    action=action,
                    is_revoked=action.is_revoked,
                    revoked_at=action.revoked_at,
                    revoked_by=action.revoked_by,
                    reversal_reason=action.reversal_reason,
                    time_between_action_and_reversal=elapsed,
                    state_changes=action.metadata.state_changes,
                    was_reapplied=action.metadata.was_reapplied,
                )
            )
        return entries

    @wrap_unexpected("getting reversal history")
    async def get_reversal_history(
        self, actor: ActorContext, filters: ReversalHistoryFilters | None = None
    ) -> list[ReversalHistoryEntry]:
        require_moderator(actor, "Only moderators and admins can access reversal history")
        filters = filters or ReversalHistoryFilters()
        query = _validate_reversal_filters(filters)

        rows = list(await self.actions.list(query))
        if filters.reversal_reason:
            needle = filters.reversal_reason.lower()
            rows = [item for item in rows if item.reversal_reason and needle in item.reversal_reason.lower()]
        if not rows:
            return []
        rows.sort(key=lambda item: item.revoked_at, reverse=True)

        user_ids = {
            user_id
            for item in rows
            for user_id in (item.moderator_id, item.revoked_by, item.target_user_id)
            if user_id
        }
        names = await self._usernames(user_ids)
        return [
            ReversalHistoryEntry(
                action=item,
                revoked_at=item.revoked_at,
                revoked_by=item.revoked_by or "",
                reversal_reason=item.reversal_reason,
                time_between_action_and_reversal=item.revoked_at - item.created_at,
                is_self_reversal=item.moderator_id == item.revoked_by,
                moderator_username=names.get(item.moderator_id),
                revoked_by_username=names.get(item.revoked_by or ""),
                target_username=names.get(item.target_user_id),
                state_changes=item.metadata.state_changes,
                was_reapplied=item.metadata.was_reapplied,
            )
            for item in rows
        ]

    async def _usernames(self, user_ids: set[str]) -> Mapping[str, str]:
        # usernames are decoration; a lookup failure leaves them blank
        try:
            return await self.profiles.usernames(user_ids)
        except Exception:  # noqa: BLE001
            logger.exception("username lookup failed", extra={"count": len(user_ids)})
            return {}

    @wrap_unexpected("fetching action logs")
    async def fetch_moderation_logs(
        self,
        actor: ActorContext,
        filters: ActionLogFilters | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[ModerationAction], int]:
        """Page of actions, newest first, plus the total matching count."""

        require_moderator(actor, "Only moderators and admins can access action logs")
        filters = filters or ActionLogFilters()
        now = self.clock()
        query = ActionQuery(
            moderator_id=filters.moderator_id or None,
            target_user_id=filters.target_user_id or None,
            action_types=(
                (coerce_enum(ModerationActionType, filters.action_type, message="Invalid action type", field_name="action_type"),)
                if filters.action_type
                else ()
            ),
            created_from=parse_timestamp(filters.start_date, field_name="start_date") if filters.start_date else None,
            created_to=parse_timestamp(filters.end_date, field_name="end_date") if filters.end_date else None,
        )
        if filters.reversed_only or filters.recently_reversed:
            query.revoked = True
        if filters.non_reversed_only:
            query.revoked = False
        if filters.recently_reversed:
            query.revoked_from = now - timedelta(days=RECENT_REVERSAL_DAYS)

        rows = [item for item in await self.actions.list(query) if self._log_match(item, filters, now)]
        rows.sort(key=lambda item: item.created_at, reverse=True)
        return rows[offset : offset + limit], len(rows)

    @staticmethod
    def _log_match(action: ModerationAction, filters: ActionLogFilters, now: datetime) -> bool:
        if filters.search_query and filters.search_query not in (action.target_user_id, action.target_id):
            return False
        if filters.expired_only and not action.is_expired(now=now):
            return False
        if filters.non_expired_only and action.expires_at is not None and action.expires_at <= now:
            return False
        return True

    @wrap_unexpected("exporting action logs")
    async def export_action_logs_csv(self, actor: ActorContext, filters: ActionLogFilters | None = None) -> str:
        require_admin(actor, "Only admins can export action logs")
        actions, _ = await self.fetch_moderation_logs(actor, filters, limit=EXPORT_MAX_ROWS)
        rows = (
            (
                action.id,
                action.moderator_id,
                action.target_user_id,
                action.action_type,
                action.target_type,
                action.target_id,
                action.reason,
                action.duration_days,
                action.expires_at,
                action.related_report_id,
                action.internal_notes,
                action.notification_sent,
                action.created_at,
                action.revoked_at,
                action.revoked_by,
                action.reversal_reason,
                _hours(action.revoked_at - action.created_at) if action.revoked_at else "",
            )
            for action in actions
        )
        content = render_csv(ACTION_LOG_HEADERS, rows)
        obs_metrics.MOD_CSV_EXPORTS_TOTAL.labels(kind="action_logs").inc()
        logger.info("action logs exported", extra={"rows": len(actions), "user_id": actor.user_id})
        return content

    @wrap_unexpected("exporting reversal history")
    async def export_reversal_history_csv(
        self, actor: ActorContext, filters: ReversalHistoryFilters | None = None
    ) -> str:
        require_admin(actor, "Only admins can export reversal history")
        entries = await self.get_reversal_history(actor, filters)
        rows = (
            (
                entry.action.id,
                entry.action.action_type,
                entry.action.moderator_id,
                entry.moderator_username,
                entry.action.target_user_id,
                entry.target_username,
                entry.action.created_at,
                entry.action.reason,
                entry.action.duration_days,
                entry.revoked_at,
                entry.revoked_by,
                entry.revoked_by_username,
                entry.reversal_reason,
                _hours(entry.time_between_action_and_reversal),
                entry.is_self_reversal,
                entry.was_reapplied,
                entry.action.related_report_id,
            )
            for entry in entries
        )
        content = render_csv(REVERSAL_HISTORY_HEADERS, rows)
        obs_metrics.MOD_CSV_EXPORTS_TOTAL.labels(kind="reversal_history").inc()
        logger.info("reversal history exported", extra={"rows": len(entries), "user_id": actor.user_id})
        return content

    @wrap_unexpected("detecting repeat offender")
    async def detect_repeat_offender(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        since = self.clock() - timedelta(days=settings.repeat_offender_window_days)
        rows = await self.actions.list(ActionQuery(target_user_id=user_id, created_from=since))
        return len(rows) >= settings.repeat_offender_threshold

    @wrap_unexpected("calculating violation timeline")
    async def calculate_violation_timeline(self, user_id: str | None) -> ViolationTimeline | None:
        if not user_id:
            return None
        if not is_valid_uuid(user_id):
            raise ModerationValidationError("Invalid user ID format", details={"user_id": user_id})
        now = self.clock()
        since = now - timedelta(days=max(TIMELINE_WINDOWS))
        rows = await self.actions.list(ActionQuery(target_user_id=user_id, created_from=since))
        counts = {
            days: sum(1 for item in rows if item.created_at >= now - timedelta(days=days))
            for days in TIMELINE_WINDOWS
        }
        message = None
        for days in TIMELINE_WINDOWS:
            if counts[days]:
                noun = "violation" if counts[days] == 1 else "violations"
                message = f"{counts[days]} {noun} in last {days} days"
                break
        return ViolationTimeline(
            last_7_days=counts[7],
            last_30_days=counts[30],
            last_90_days=counts[90],
            message=message,
        )
