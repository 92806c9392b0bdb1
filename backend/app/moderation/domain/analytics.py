"""Moderation metrics: pure calculators plus the cached service that feeds them."""

from __future__ import annotations

import logging
import statistics
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from app.moderation.domain.authorization import ActorContext, require_moderator
from app.moderation.domain.caching import MetricsCache, cache_key
from app.moderation.domain.errors import wrap_unexpected
from app.moderation.domain.models import AlbumCascade, ModerationAction, Report, ReportStatus, ReportType
from app.moderation.domain.repositories import ActionQuery, ActionRepository, ProfileRepository, ReportQuery, ReportRepository
from app.moderation.domain.validation import require_uuid, validate_date_range
from app.settings import settings

logger = logging.getLogger(__name__)

# Resolution targets in hours, keyed by report priority.
SLA_TARGETS: dict[int, int] = {1: 2, 2: 8, 3: 24, 4: 48, 5: 72}
DEFAULT_SLA_HOURS = 72
DEFAULT_ACTION_PRIORITY = 3
TOP_REASONS_LIMIT = 5
MULTIPLE_REVERSALS_MIN = 2
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
CLOSED_STATUSES = (ReportStatus.RESOLVED, ReportStatus.DISMISSED)
NO_REASON = "No reason provided"

TRENDING_PLAY_WEIGHT = 0.7
TRENDING_LIKE_WEIGHT = 0.3


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


def percentage(part: int | float, whole: int | float, places: int = 2) -> float:
    if not whole:
        return 0
    return round(part / whole * 100, places)


def _is_closed(report: Report) -> bool:
    return report.status in CLOSED_STATUSES and report.reviewed_at is not None


# --- reversal calculators --------------------------------------------------


def _rate_rows(buckets: Mapping[Any, list[int]], key_name: str) -> list[dict[str, Any]]:
    return [
        {
            key_name: key,
            "total_actions": total,
            "reversed_actions": reversed_count,
            "reversal_rate": percentage(reversed_count, total),
        }
        for key, (total, reversed_count) in buckets.items()
    ]


def _tally(actions: Iterable[ModerationAction], key: Callable[[ModerationAction], Any]) -> dict[Any, list[int]]:
    buckets: dict[Any, list[int]] = defaultdict(lambda: [0, 0])
    for action in actions:
        bucket = buckets[key(action)]
        bucket[0] += 1
        if action.is_revoked:
            bucket[1] += 1
    return buckets


def per_moderator_stats(actions: Sequence[ModerationAction]) -> list[dict[str, Any]]:
    """Totals and reversal rate per moderator; the sums equal the overall totals."""

    rows = _rate_rows(_tally(actions, lambda action: action.moderator_id), "moderator_id")
    rows.sort(key=lambda row: (-row["reversal_rate"], row["moderator_id"]))
    return rows


def time_to_reversal_stats(actions: Sequence[ModerationAction]) -> dict[str, float]:
    hours = sorted(_hours(action.revoked_at - action.created_at) for action in actions if action.revoked_at)
    if not hours:
        return {"average_hours": 0, "median_hours": 0, "fastest_hours": 0, "slowest_hours": 0}
    return {
        "average_hours": round(statistics.fmean(hours), 2),
        "median_hours": round(statistics.median(hours), 2),
        "fastest_hours": round(hours[0], 2),
        "slowest_hours": round(hours[-1], 2),
    }


def calculate_reversal_rate(
    actions: Sequence[ModerationAction], priorities: Mapping[str, int] | None = None
) -> dict[str, Any]:
    """Overall reversal rate with breakdowns by action type and report priority.

    ``priorities`` maps report ids to their priority; actions without a
    related report count as priority 3.
    """

    priorities = priorities or {}
    total = len(actions)
    reversed_total = sum(1 for action in actions if action.is_revoked)

    by_type = _rate_rows(_tally(actions, lambda action: action.action_type.value), "action_type")
    by_type.sort(key=lambda row: (-row["reversal_rate"], row["action_type"]))
    by_priority = _rate_rows(
        _tally(actions, lambda action: priorities.get(action.related_report_id or "", DEFAULT_ACTION_PRIORITY)),
        "priority",
    )
    by_priority.sort(key=lambda row: row["priority"])
    return {
        "overall_reversal_rate": percentage(reversed_total, total),
        "total_actions": total,
        "total_reversals": reversed_total,
        "reversal_rate_by_action_type": by_type,
        "reversal_rate_by_priority": by_priority,
    }


def reversal_metrics(actions: Sequence[ModerationAction]) -> dict[str, Any]:
    total = len(actions)
    reversed_total = sum(1 for action in actions if action.is_revoked)
    return {
        "overall_reversal_rate": percentage(reversed_total, total),
        "total_actions": total,
        "total_reversals": reversed_total,
        "per_moderator_stats": per_moderator_stats(actions),
        "time_to_reversal_stats": time_to_reversal_stats(actions),
    }


def moderator_reversal_stats(moderator_id: str, actions: Sequence[ModerationAction]) -> dict[str, Any]:
    own = [action for action in actions if action.moderator_id == moderator_id]
    reversed_actions = [action for action in own if action.is_revoked]
    self_reversals = sum(1 for action in reversed_actions if action.revoked_by == moderator_id)
    by_type = {
        action_type: {"total": total, "reversed": reversed_count}
        for action_type, (total, reversed_count) in sorted(
            _tally(own, lambda action: action.action_type.value).items()
        )
    }
    return {
        "moderator_id": moderator_id,
        "total_actions": len(own),
        "reversed_actions": len(reversed_actions),
        "reversal_rate": percentage(len(reversed_actions), len(own)),
        "average_time_to_reversal_hours": time_to_reversal_stats(reversed_actions)["average_hours"],
        "self_reversals": self_reversals,
        "reversals_by_others": len(reversed_actions) - self_reversals,
        "actions_by_type": by_type,
    }


def reversal_time_metrics(actions: Sequence[ModerationAction]) -> dict[str, Any]:
    reversed_actions = [action for action in actions if action.is_revoked]
    grouped: dict[str, list[ModerationAction]] = defaultdict(list)
    for action in reversed_actions:
        grouped[action.action_type.value].append(action)
    return {
        **time_to_reversal_stats(reversed_actions),
        "by_action_type": {
            action_type: {**time_to_reversal_stats(items), "count": len(items)}
            for action_type, items in sorted(grouped.items())
        },
    }


def calculate_reversal_patterns(
    actions: Sequence[ModerationAction],
    *,
    usernames: Mapping[str, str] | None = None,
    start_date: str = "",
    end_date: str = "",
) -> dict[str, Any]:
    """Common reasons, repeat targets and time-of-week spread of reversals."""

    usernames = usernames or {}
    reversed_actions = [action for action in actions if action.is_revoked]
    total = len(reversed_actions)
    date_range = {"start_date": start_date, "end_date": end_date}
    if not total:
        return {
            "common_reasons": [],
            "users_with_multiple_reversals": [],
            "day_of_week_patterns": [],
            "hour_of_day_patterns": [],
            "total_reversals": 0,
            "date_range": date_range,
        }

    reasons = Counter(action.reversal_reason or NO_REASON for action in reversed_actions)
    common = [
        {"reason": reason, "count": count, "percentage": percentage(count, total)}
        for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
    ]

    totals_by_user = Counter(action.target_user_id for action in actions)
    reasons_by_user: dict[str, Counter[str]] = defaultdict(Counter)
    for action in reversed_actions:
        reasons_by_user[action.target_user_id][action.reversal_reason or NO_REASON] += 1
    repeat_users = []
    for user_id, user_reasons in reasons_by_user.items():
        count = sum(user_reasons.values())
        if count < MULTIPLE_REVERSALS_MIN:
            continue
        top_reason = sorted(user_reasons.items(), key=lambda item: (-item[1], item[0]))[0][0]
        total_for_user = totals_by_user.get(user_id) or count
        repeat_users.append(
            {
                "user_id": user_id,
                "username": usernames.get(user_id),
                "reversed_action_count": count,
                "total_action_count": total_for_user,
                "reversal_rate": percentage(count, total_for_user),
                "most_common_reason": top_reason,
            }
        )
    repeat_users.sort(key=lambda row: (-row["reversed_action_count"], row["user_id"]))

    # weekday() is Monday=0; the report uses Sunday=0
    days = Counter((action.revoked_at.astimezone(timezone.utc).weekday() + 1) % 7 for action in reversed_actions)
    hours = Counter(action.revoked_at.astimezone(timezone.utc).hour for action in reversed_actions)
    return {
        "common_reasons": common,
        "users_with_multiple_reversals": repeat_users,
        "day_of_week_patterns": [
            {"day_of_week": DAY_NAMES[day], "day_number": day, "count": days[day], "percentage": percentage(days[day], total)}
            for day in range(7)
        ],
        "hour_of_day_patterns": [
            {"hour": hour, "count": hours[hour], "percentage": percentage(hours[hour], total)} for hour in range(24)
        ],
        "total_reversals": total,
        "date_range": date_range,
    }


# --- album calculators -----------------------------------------------------


def album_vs_track_percentage(album_reports: int, track_reports: int) -> float:
    return percentage(album_reports, album_reports + track_reports, places=1)


def cascading_action_stats(actions: Iterable[ModerationAction]) -> dict[str, Any]:
    """Split album removals into cascading and selective by their metadata flag."""

    cascading = selective = 0
    for action in actions:
        cascade = action.metadata.cascade
        if not isinstance(cascade, AlbumCascade):
            continue
        if cascade.cascading_action:
            cascading += 1
        else:
            selective += 1
    return {
        "total_cascading_actions": cascading + selective,
        "album_and_tracks_removed": cascading,
        "album_only_removed": selective,
        "cascading_percentage": percentage(cascading, cascading + selective, places=1),
    }


def album_metrics(reports: Sequence[Report], actions: Sequence[ModerationAction]) -> dict[str, Any]:
    album_reports = sum(1 for report in reports if report.report_type is ReportType.ALBUM)
    track_reports = sum(1 for report in reports if report.report_type is ReportType.TRACK)
    return {
        "total_album_reports": album_reports,
        "album_vs_track_percentage": album_vs_track_percentage(album_reports, track_reports),
        "cascading_action_stats": cascading_action_stats(actions),
    }


def calculate_trending_score(play_count: int, like_count: int) -> float:
    return play_count * TRENDING_PLAY_WEIGHT + like_count * TRENDING_LIKE_WEIGHT


# --- report calculators ----------------------------------------------------


def calculate_sla_compliance(reports: Iterable[Report]) -> dict[str, dict[str, float]]:
    compliance = {f"p{priority}": {"total": 0, "within_sla": 0, "percentage": 0} for priority in SLA_TARGETS}
    for report in reports:
        if not _is_closed(report):
            continue
        bucket = compliance.get(f"p{report.priority}")
        if bucket is None:
            continue
        bucket["total"] += 1
        if _hours(report.reviewed_at - report.created_at) <= SLA_TARGETS.get(report.priority, DEFAULT_SLA_HOURS):
            bucket["within_sla"] += 1
    for bucket in compliance.values():
        bucket["percentage"] = percentage(bucket["within_sla"], bucket["total"], places=0)
    return compliance


def top_reasons(reports: Iterable[Report], limit: int = TOP_REASONS_LIMIT) -> list[dict[str, Any]]:
    counts = Counter(report.reason.value for report in reports)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"reason": reason, "count": count} for reason, count in ranked[:limit]]


def count_actions_by_type(actions: Iterable[ModerationAction]) -> dict[str, int]:
    return dict(sorted(Counter(action.action_type.value for action in actions).items()))


def average_resolution_time(reports: Iterable[Report]) -> dict[str, int]:
    durations = [report.reviewed_at - report.created_at for report in reports if _is_closed(report)]
    if not durations:
        return {"hours": 0, "minutes": 0}
    seconds = sum(delta.total_seconds() for delta in durations) / len(durations)
    return {"hours": int(seconds // 3600), "minutes": int(seconds % 3600 // 60)}


def build_metrics_trends(
    reports: Sequence[Report], start: datetime, end: datetime, interval_days: int = 1
) -> dict[str, list[dict[str, Any]]]:
    """Report volume and resolution rate per interval between ``start`` and ``end``."""

    volume: list[dict[str, Any]] = []
    resolution: list[dict[str, Any]] = []
    cursor = start
    while cursor < end:
        stop = min(cursor + timedelta(days=interval_days), end)
        bucket = [report for report in reports if cursor <= report.created_at < stop]
        closed = sum(1 for report in bucket if report.status in CLOSED_STATUSES)
        label = cursor.date().isoformat()
        volume.append({"date": label, "count": len(bucket)})
        resolution.append({"date": label, "rate": percentage(closed, len(bucket), places=0)})
        cursor = stop
    return {"report_volume": volume, "resolution_rate": resolution}


def moderator_performance(
    actions: Iterable[ModerationAction], reports_by_id: Mapping[str, Report]
) -> list[dict[str, Any]]:
    stats: dict[str, dict[str, Any]] = {}
    for action in actions:
        entry = stats.setdefault(action.moderator_id, {"count": 0, "hours": []})
        entry["count"] += 1
        report = reports_by_id.get(action.related_report_id or "")
        if report is not None and report.reviewed_at is not None:
            entry["hours"].append(_hours(report.reviewed_at - report.created_at))
    return [
        {
            "moderator_id": moderator_id,
            "actions_count": entry["count"],
            "average_resolution_time": statistics.fmean(entry["hours"]) if entry["hours"] else 0,
        }
        for moderator_id, entry in sorted(stats.items())
    ]


# --- service ---------------------------------------------------------------


@dataclass
class MetricsService:
    """Moderator-facing dashboards, cached for a short TTL."""

    reports: ReportRepository
    actions: ActionRepository
    profiles: ProfileRepository
    cache: Optional[MetricsCache] = None
    clock: Callable[[], datetime] = _now

    async def _cached(self, name: str, builder: Callable[[], Any], **params: Any) -> Any:
        if self.cache is None:
            return await builder()
        return await self.cache.get_or_build(
            cache_key(name, **params), ttl=settings.metrics_cache_ttl_seconds, builder=builder
        )

    async def _actions_between(self, start: datetime, end: datetime, **filters: Any) -> Sequence[ModerationAction]:
        return await self.actions.list(ActionQuery(created_from=start, created_to=end, **filters))

    @wrap_unexpected("calculating metrics")
    async def calculate_moderation_metrics(
        self,
        actor: ActorContext,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        include_sla: bool = False,
        include_trends: bool = False,
    ) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can access metrics")
        has_range = bool(start_date or end_date)
        now = self.clock()
        if has_range:
            start, end = validate_date_range(start_date, end_date)
        else:
            start, end = now - timedelta(days=30), now

        async def build() -> dict[str, Any]:
            return await self._moderation_metrics(
                start, end, now, is_admin=actor.is_admin, include_sla=include_sla, include_trends=include_trends and has_range
            )

        return await self._cached(
            "moderation_metrics",
            build,
            start=start.isoformat() if has_range else None,
            end=end.isoformat() if has_range else None,
            admin=actor.is_admin,
            sla=include_sla,
            trends=include_trends,
        )

    async def _moderation_metrics(
        self,
        start: datetime,
        end: datetime,
        now: datetime,
        *,
        is_admin: bool,
        include_sla: bool,
        include_trends: bool,
    ) -> dict[str, Any]:
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = now - timedelta(days=7)
        earliest = min(start, today, week)
        reports = await self.reports.list(ReportQuery(created_from=earliest, created_to=end))
        in_range = [report for report in reports if report.created_at >= start]
        closed = [report for report in await self.reports.list(ReportQuery()) if _is_closed(report)]
        actions = await self._actions_between(start, end)

        def received_since(since: datetime) -> int:
            return sum(1 for report in reports if report.created_at >= since)

        def resolved_since(since: datetime) -> int:
            return sum(1 for report in closed if since <= report.reviewed_at <= end)

        resolved_in_range = [report for report in closed if start <= report.reviewed_at <= end]
        result: dict[str, Any] = {
            "reports_received": {"today": received_since(today), "week": received_since(week), "month": len(in_range)},
            "reports_resolved": {"today": resolved_since(today), "week": resolved_since(week), "month": len(resolved_in_range)},
            "average_resolution_time": average_resolution_time(resolved_in_range),
            "actions_by_type": count_actions_by_type(actions),
            "top_reasons": top_reasons(in_range),
            "album_metrics": album_metrics(in_range, actions),
        }
        if is_admin:
            result["moderator_performance"] = moderator_performance(actions, {report.id: report for report in closed})
        if include_sla:
            result["sla_compliance"] = calculate_sla_compliance(resolved_in_range)
        if include_trends:
            result["trends"] = build_metrics_trends(in_range, start, end)
        return result

    @wrap_unexpected("calculating reversal rate")
    async def calculate_reversal_rate(self, actor: ActorContext, start_date: str, end_date: str) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can calculate reversal rates")
        start, end = validate_date_range(start_date, end_date)

        async def build() -> dict[str, Any]:
            actions = await self._actions_between(start, end)
            report_ids = {action.related_report_id for action in actions if action.related_report_id}
            priorities = {}
            for report_id in sorted(report_ids):
                report = await self.reports.get(report_id)
                if report is not None:
                    priorities[report_id] = report.priority
            return calculate_reversal_rate(actions, priorities)

        return await self._cached("reversal_rate", build, start=start.isoformat(), end=end.isoformat())

    @wrap_unexpected("calculating reversal metrics")
    async def get_reversal_metrics(self, actor: ActorContext, start_date: str, end_date: str) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can access reversal metrics")
        start, end = validate_date_range(start_date, end_date)

        async def build() -> dict[str, Any]:
            return reversal_metrics(await self._actions_between(start, end))

        return await self._cached("reversal_metrics", build, start=start.isoformat(), end=end.isoformat())

    @wrap_unexpected("calculating moderator reversal statistics")
    async def get_moderator_reversal_stats(
        self, actor: ActorContext, moderator_id: str, start_date: str, end_date: str
    ) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can access reversal statistics")
        require_uuid(moderator_id, message="Invalid moderator ID format", field_name="moderator_id")
        start, end = validate_date_range(start_date, end_date)

        async def build() -> dict[str, Any]:
            actions = await self._actions_between(start, end, moderator_id=moderator_id)
            return moderator_reversal_stats(moderator_id, actions)

        return await self._cached(
            "moderator_reversal_stats", build, moderator_id=moderator_id, start=start.isoformat(), end=end.isoformat()
        )

    @wrap_unexpected("calculating reversal time metrics")
    async def get_reversal_time_metrics(self, actor: ActorContext, start_date: str, end_date: str) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can access reversal time metrics")
        start, end = validate_date_range(start_date, end_date)

        async def build() -> dict[str, Any]:
            return reversal_time_metrics(await self._actions_between(start, end, revoked=True))

        return await self._cached("reversal_time_metrics", build, start=start.isoformat(), end=end.isoformat())

    @wrap_unexpected("analyzing reversal patterns")
    async def get_reversal_patterns(self, actor: ActorContext, start_date: str, end_date: str) -> dict[str, Any]:
        require_moderator(actor, "Only moderators and admins can access reversal patterns")
        start, end = validate_date_range(start_date, end_date)

        async def build() -> dict[str, Any]:
            actions = await self._actions_between(start, end)
            repeat_targets = Counter(action.target_user_id for action in actions if action.is_revoked)
            wanted = {user_id for user_id, count in repeat_targets.items() if count >= MULTIPLE_REVERSALS_MIN}
            usernames = await self.profiles.usernames(wanted) if wanted else {}
            return calculate_reversal_patterns(
                actions, usernames=usernames, start_date=start_date, end_date=end_date
            )

        return await self._cached("reversal_patterns", build, start=start.isoformat(), end=end.isoformat())
