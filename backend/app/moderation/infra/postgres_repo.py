"""PostgreSQL-backed repositories for moderation records."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Mapping, Optional, Sequence

import asyncpg

from app.moderation.domain.errors import ImmutableActionError
from app.moderation.domain.models import (
    ActionMetadata,
    Album,
    AlbumTrack,
    ModerationAction,
    ModerationActionType,
    Notification,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    RestrictionType,
    SecurityEvent,
    SystemMetric,
    Track,
    UserProfile,
    UserRestriction,
    UserRole,
)
from app.moderation.domain.repositories import (
    ActionQuery,
    ActionRepository,
    ContentRepository,
    NotificationRepository,
    ProfileRepository,
    ReportQuery,
    ReportRepository,
    RestrictionRepository,
    SecurityEventRepository,
    SystemMetricRepository,
    UnitOfWork,
)

REPORT_COLUMNS = """
    id, reporter_id, reported_user_id, report_type, target_id, reason, description, status, priority,
    moderator_flagged, reviewed_by, reviewed_at, resolution_notes, action_taken, created_at, updated_at
"""

ACTION_COLUMNS = """
    id, moderator_id, target_user_id, action_type, target_type, target_id, reason, duration_days, expires_at,
    related_report_id, internal_notes, notification_sent, notification_id, metadata, created_at, revoked_at,
    revoked_by
"""

RESTRICTION_COLUMNS = """
    id, user_id, restriction_type, reason, applied_by, expires_at, is_active, related_action_id, created_at,
    updated_at
"""

# Content tables that carry a user_id owner column.
_OWNED_TABLES: dict[str, str] = {
    ReportType.POST.value: "posts",
    ReportType.COMMENT.value: "comments",
    ReportType.TRACK.value: "tracks",
    ReportType.ALBUM.value: "albums",
}


def _json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return dict(value)


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _report_from_record(record: asyncpg.Record) -> Report:
    return Report(
        id=str(record["id"]),
        reporter_id=str(record["reporter_id"]),
        reported_user_id=_opt_str(record["reported_user_id"]),
        report_type=ReportType(record["report_type"]),
        target_id=str(record["target_id"]),
        reason=ReportReason(record["reason"]),
        description=record["description"],
        status=ReportStatus(record["status"]),
        priority=int(record["priority"]),
        moderator_flagged=bool(record["moderator_flagged"]),
        reviewed_by=_opt_str(record["reviewed_by"]),
        reviewed_at=record["reviewed_at"],
        resolution_notes=record["resolution_notes"],
        action_taken=record["action_taken"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _action_from_record(record: asyncpg.Record) -> ModerationAction:
    return ModerationAction(
        id=str(record["id"]),
        moderator_id=str(record["moderator_id"]),
        target_user_id=str(record["target_user_id"]),
        action_type=ModerationActionType(record["action_type"]),
        target_type=record["target_type"],
        target_id=_opt_str(record["target_id"]),
        reason=str(record["reason"]),
        duration_days=record["duration_days"],
        expires_at=record["expires_at"],
        related_report_id=_opt_str(record["related_report_id"]),
        internal_notes=record["internal_notes"],
        notification_sent=bool(record["notification_sent"]),
        notification_id=_opt_str(record["notification_id"]),
        metadata=ActionMetadata.from_json(_json(record["metadata"])),
        created_at=record["created_at"],
        revoked_at=record["revoked_at"],
        revoked_by=_opt_str(record["revoked_by"]),
    )


def _restriction_from_record(record: asyncpg.Record) -> UserRestriction:
    return UserRestriction(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        restriction_type=RestrictionType(record["restriction_type"]),
        reason=str(record["reason"]),
        applied_by=str(record["applied_by"]),
        expires_at=record["expires_at"],
        is_active=bool(record["is_active"]),
        related_action_id=_opt_str(record["related_action_id"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _metadata_payload(action: ModerationAction) -> Optional[str]:
    payload = action.metadata.to_json()
    return json.dumps(payload) if payload is not None else None


class _Where:
    """Accumulates ``AND`` clauses with positional asyncpg parameters."""

    def __init__(self) -> None:
        self.clauses: list[str] = []
        self.params: list[Any] = []

    def add(self, template: str, value: Any) -> None:
        self.params.append(value)
        self.clauses.append(template.format(f"${len(self.params)}"))

    def raw(self, clause: str) -> None:
        self.clauses.append(clause)

    def sql(self) -> str:
        return f"WHERE {' AND '.join(self.clauses)}" if self.clauses else ""


def _report_where(query: ReportQuery) -> _Where:
    where = _Where()
    if query.status is not None:
        where.add("status = {}", query.status.value)
    if query.priority is not None:
        where.add("priority = {}", query.priority)
    if query.moderator_flagged is not None:
        where.add("moderator_flagged = {}", query.moderator_flagged)
    if query.report_type is not None:
        where.add("report_type = {}", query.report_type.value)
    if query.reported_user_id is not None:
        where.add("reported_user_id = {}", query.reported_user_id)
    if query.created_from is not None:
        where.add("created_at >= {}", query.created_from)
    if query.created_to is not None:
        where.add("created_at <= {}", query.created_to)
    return where


def _action_where(query: ActionQuery) -> _Where:
    where = _Where()
    if query.moderator_id is not None:
        where.add("moderator_id = {}", query.moderator_id)
    if query.target_user_id is not None:
        where.add("target_user_id = {}", query.target_user_id)
    if query.action_types:
        where.add("action_type = ANY({}::text[])", [item.value for item in query.action_types])
    if query.target_type is not None:
        where.add("target_type = {}", query.target_type)
    if query.target_id is not None:
        where.add("target_id = {}", query.target_id)
    if query.created_from is not None:
        where.add("created_at >= {}", query.created_from)
    if query.created_to is not None:
        where.add("created_at <= {}", query.created_to)
    if query.revoked is True:
        where.raw("revoked_at IS NOT NULL")
    elif query.revoked is False:
        where.raw("revoked_at IS NULL")
    if query.revoked_by is not None:
        where.add("revoked_by = {}", query.revoked_by)
    if query.revoked_from is not None:
        where.add("revoked_at >= {}", query.revoked_from)
    if query.revoked_to is not None:
        where.add("revoked_at <= {}", query.revoked_to)
    return where


_bound_connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar("moderation_connection", default=None)


class _PoolRepository:
    """Runs queries on the connection bound by ``PostgresUnitOfWork``, else on the pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @property
    def db(self) -> Any:
        return _bound_connection.get() or self.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = _bound_connection.get()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as conn:
            yield conn


class PostgresUnitOfWork(UnitOfWork):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _bound_connection.get() is not None:
            yield
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = _bound_connection.set(conn)
                try:
                    yield
                finally:
                    _bound_connection.reset(token)


class PostgresReportRepository(_PoolRepository, ReportRepository):
    async def create(self, report: Report) -> Report:
        record = await self.db.fetchrow(
            f"""
            INSERT INTO moderation_reports (
                id, reporter_id, reported_user_id, report_type, target_id, reason, description, status,
                priority, moderator_flagged, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {REPORT_COLUMNS}
            """,
            report.id,
            report.reporter_id,
            report.reported_user_id,
            report.report_type.value,
            report.target_id,
            report.reason.value,
            report.description,
            report.status.value,
            report.priority,
            report.moderator_flagged,
            report.created_at,
        )
        assert record is not None
        return _report_from_record(record)

    async def get(self, report_id: str) -> Report | None:
        record = await self.db.fetchrow(f"SELECT {REPORT_COLUMNS} FROM moderation_reports WHERE id = $1", report_id)
        return _report_from_record(record) if record is not None else None

    async def update(self, report: Report) -> Report:
        record = await self.db.fetchrow(
            f"""
            UPDATE moderation_reports
            SET status = $2, reviewed_by = $3, reviewed_at = $4, resolution_notes = $5, action_taken = $6,
                priority = $7, updated_at = now()
            WHERE id = $1
            RETURNING {REPORT_COLUMNS}
            """,
            report.id,
            report.status.value,
            report.reviewed_by,
            report.reviewed_at,
            report.resolution_notes,
            report.action_taken,
            report.priority,
        )
        if record is None:
            raise KeyError(report.id)
        return _report_from_record(record)

    async def find_recent(
        self, reporter_id: str, report_type: ReportType, target_id: str, *, since: datetime
    ) -> Report | None:
        record = await self.db.fetchrow(
            f"""
            SELECT {REPORT_COLUMNS}
            FROM moderation_reports
            WHERE reporter_id = $1 AND report_type = $2 AND target_id = $3 AND created_at >= $4
            ORDER BY created_at DESC
            LIMIT 1
            """,
            reporter_id,
            report_type.value,
            target_id,
            since,
        )
        return _report_from_record(record) if record is not None else None

    async def count_by_reporter(self, reporter_id: str, *, since: datetime) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM moderation_reports WHERE reporter_id = $1 AND created_at >= $2",
            reporter_id,
            since,
        )
        return int(value or 0)

    async def list(self, query: ReportQuery) -> Sequence[Report]:
        where = _report_where(query)
        records = await self.db.fetch(
            f"SELECT {REPORT_COLUMNS} FROM moderation_reports {where.sql()} ORDER BY created_at ASC",
            *where.params,
        )
        return [_report_from_record(record) for record in records]


class PostgresActionRepository(_PoolRepository, ActionRepository):
    """Reversed rows are never rewritten: every write is guarded by ``revoked_at IS NULL``."""

    async def create(self, action: ModerationAction) -> ModerationAction:
        record = await self.db.fetchrow(
            f"""
            INSERT INTO moderation_actions (
                id, moderator_id, target_user_id, action_type, target_type, target_id, reason, duration_days,
                expires_at, related_report_id, internal_notes, notification_sent, notification_id, metadata,
                created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb, $15)
            RETURNING {ACTION_COLUMNS}
            """,
            action.id,
            action.moderator_id,
            action.target_user_id,
            action.action_type.value,
            action.target_type,
            action.target_id,
            action.reason,
            action.duration_days,
            action.expires_at,
            action.related_report_id,
            action.internal_notes,
            action.notification_sent,
            action.notification_id,
            _metadata_payload(action),
            action.created_at,
        )
        assert record is not None
        return _action_from_record(record)

    async def get(self, action_id: str) -> ModerationAction | None:
        record = await self.db.fetchrow(f"SELECT {ACTION_COLUMNS} FROM moderation_actions WHERE id = $1", action_id)
        return _action_from_record(record) if record is not None else None

    async def _reject_missing_or_revoked(self, action_id: str) -> None:
        exists = await self.db.fetchval("SELECT 1 FROM moderation_actions WHERE id = $1", action_id)
        if exists is None:
            raise KeyError(action_id)
        raise ImmutableActionError(action_id)

    async def update(self, action: ModerationAction) -> ModerationAction:
        if action.revoked_at is not None or action.revoked_by is not None:
            raise ImmutableActionError(action.id)
        record = await self.db.fetchrow(
            f"""
            UPDATE moderation_actions
            SET reason = $2, duration_days = $3, expires_at = $4, internal_notes = $5, notification_sent = $6,
                notification_id = $7, metadata = $8::jsonb
            WHERE id = $1 AND revoked_at IS NULL
            RETURNING {ACTION_COLUMNS}
            """,
            action.id,
            action.reason,
            action.duration_days,
            action.expires_at,
            action.internal_notes,
            action.notification_sent,
            action.notification_id,
            _metadata_payload(action),
        )
        if record is None:
            await self._reject_missing_or_revoked(action.id)
        return _action_from_record(record)

    async def revoke(self, action: ModerationAction) -> ModerationAction:
        record = await self.db.fetchrow(
            f"""
            UPDATE moderation_actions
            SET revoked_at = $2, revoked_by = $3, metadata = $4::jsonb
            WHERE id = $1 AND revoked_at IS NULL
            RETURNING {ACTION_COLUMNS}
            """,
            action.id,
            action.revoked_at,
            action.revoked_by,
            _metadata_payload(action),
        )
        if record is None:
            await self._reject_missing_or_revoked(action.id)
        return _action_from_record(record)

    async def list(self, query: ActionQuery) -> Sequence[ModerationAction]:
        where = _action_where(query)
        records = await self.db.fetch(
            f"SELECT {ACTION_COLUMNS} FROM moderation_actions {where.sql()} ORDER BY created_at ASC",
            *where.params,
        )
        return [_action_from_record(record) for record in records]

    async def count_by_moderator(self, moderator_id: str, *, since: datetime) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM moderation_actions WHERE moderator_id = $1 AND created_at >= $2",
            moderator_id,
            since,
        )
        return int(value or 0)


class PostgresRestrictionRepository(_PoolRepository, RestrictionRepository):
    async def create(self, restriction: UserRestriction) -> UserRestriction:
        record = await self.db.fetchrow(
            f"""
            INSERT INTO user_restrictions (
                id, user_id, restriction_type, reason, applied_by, expires_at, is_active, related_action_id,
                created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {RESTRICTION_COLUMNS}
            """,
            restriction.id,
            restriction.user_id,
            restriction.restriction_type.value,
            restriction.reason,
            restriction.applied_by,
            restriction.expires_at,
            restriction.is_active,
            restriction.related_action_id,
            restriction.created_at,
        )
        assert record is not None
        return _restriction_from_record(record)

    async def get(self, restriction_id: str) -> UserRestriction | None:
        record = await self.db.fetchrow(
            f"SELECT {RESTRICTION_COLUMNS} FROM user_restrictions WHERE id = $1", restriction_id
        )
        return _restriction_from_record(record) if record is not None else None

    async def list_for_user(self, user_id: str) -> Sequence[UserRestriction]:
        records = await self.db.fetch(
            f"SELECT {RESTRICTION_COLUMNS} FROM user_restrictions WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return [_restriction_from_record(record) for record in records]

    async def deactivate(self, restriction_id: str, *, at: datetime) -> None:
        await self.db.execute(
            "UPDATE user_restrictions SET is_active = false, updated_at = $2 WHERE id = $1",
            restriction_id,
            at,
        )

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> int:
        status = await self.db.execute(
            """
            UPDATE user_restrictions SET is_active = false, updated_at = $2
            WHERE related_action_id = $1 AND is_active
            """,
            action_id,
            at,
        )
        return _affected(status)

    async def deactivate_type(self, user_id: str, restriction_type: RestrictionType, *, at: datetime) -> int:
        status = await self.db.execute(
            """
            UPDATE user_restrictions SET is_active = false, updated_at = $3
            WHERE user_id = $1 AND restriction_type = $2 AND is_active
            """,
            user_id,
            restriction_type.value,
            at,
        )
        return _affected(status)


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresProfileRepository(_PoolRepository, ProfileRepository):
    async def get_profile(self, user_id: str) -> UserProfile | None:
        record = await self.db.fetchrow(
            """
            SELECT user_id, username, created_at, suspended_until, suspension_reason, avatar_url
            FROM user_profiles
            WHERE user_id = $1
            """,
            user_id,
        )
        if record is None:
            return None
        return UserProfile(
            user_id=str(record["user_id"]),
            username=str(record["username"]),
            created_at=record["created_at"],
            suspended_until=record["suspended_until"],
            suspension_reason=record["suspension_reason"],
            avatar_url=record["avatar_url"],
        )

    async def get_role(self, user_id: str) -> UserRole:
        records = await self.db.fetch(
            "SELECT role_type FROM user_roles WHERE user_id = $1 AND is_active",
            user_id,
        )
        roles = {str(record["role_type"]) for record in records}
        if UserRole.ADMIN.value in roles:
            return UserRole.ADMIN
        if UserRole.MODERATOR.value in roles:
            return UserRole.MODERATOR
        return UserRole.USER

    async def list_staff_ids(self, roles: Iterable[UserRole]) -> Sequence[str]:
        records = await self.db.fetch(
            "SELECT DISTINCT user_id FROM user_roles WHERE role_type = ANY($1::text[]) AND is_active",
            [role.value for role in roles],
        )
        return [str(record["user_id"]) for record in records]

    async def usernames(self, user_ids: Iterable[str]) -> Mapping[str, str]:
        ids = list(user_ids)
        if not ids:
            return {}
        records = await self.db.fetch(
            "SELECT user_id, username FROM user_profiles WHERE user_id = ANY($1::uuid[])",
            ids,
        )
        return {str(record["user_id"]): str(record["username"]) for record in records}

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        await self.db.execute(
            "UPDATE user_profiles SET suspended_until = $2, suspension_reason = $3 WHERE user_id = $1",
            user_id,
            until,
            reason,
        )

    async def clear_suspension(self, user_id: str) -> None:
        await self.db.execute(
            "UPDATE user_profiles SET suspended_until = NULL, suspension_reason = NULL WHERE user_id = $1",
            user_id,
        )


class PostgresContentRepository(_PoolRepository, ContentRepository):
    async def get_owner(self, content_type: ReportType, content_id: str) -> str | None:
        if content_type is ReportType.USER:
            return content_id
        table = _OWNED_TABLES.get(content_type.value)
        if table is None:
            return None
        value = await self.db.fetchval(f"SELECT user_id FROM {table} WHERE id = $1", content_id)
        return _opt_str(value)

    async def get_album(self, album_id: str) -> Album | None:
        record = await self.db.fetchrow(
            """
            SELECT id, user_id, name, description, cover_image_url, is_public, created_at
            FROM albums
            WHERE id = $1
            """,
            album_id,
        )
        if record is None:
            return None
        return Album(
            id=str(record["id"]),
            user_id=str(record["user_id"]),
            name=str(record["name"]),
            description=record["description"],
            cover_image_url=record["cover_image_url"],
            is_public=bool(record["is_public"]),
            created_at=record["created_at"],
        )

    async def list_album_tracks(self, album_id: str) -> Sequence[tuple[AlbumTrack, Track]]:
        records = await self.db.fetch(
            """
            SELECT at.album_id, at.position, t.id, t.user_id, t.title, t.author, t.duration, t.play_count,
                   t.like_count, t.is_public, t.created_at
            FROM album_tracks at
            JOIN tracks t ON t.id = at.track_id
            WHERE at.album_id = $1
            ORDER BY at.position ASC
            """,
            album_id,
        )
        return [
            (
                AlbumTrack(album_id=str(record["album_id"]), track_id=str(record["id"]), position=int(record["position"])),
                _track_from_record(record),
            )
            for record in records
        ]

    async def delete_album(self, album_id: str, *, delete_tracks: bool) -> Sequence[str]:
        async with self._connection() as conn:
            async with conn.transaction():
                records = await conn.fetch("SELECT track_id FROM album_tracks WHERE album_id = $1", album_id)
                track_ids = [str(record["track_id"]) for record in records]
                await conn.execute("DELETE FROM album_tracks WHERE album_id = $1", album_id)
                if delete_tracks and track_ids:
                    await conn.execute("DELETE FROM tracks WHERE id = ANY($1::uuid[])", track_ids)
                await conn.execute("DELETE FROM albums WHERE id = $1", album_id)
        return track_ids

    async def delete_content(self, content_type: str, content_id: str) -> None:
        table = _OWNED_TABLES.get(content_type)
        if table is None:
            return
        if table == "tracks":
            async with self._connection() as conn:
                async with conn.transaction():
                    await conn.execute("DELETE FROM album_tracks WHERE track_id = $1", content_id)
                    await conn.execute("DELETE FROM tracks WHERE id = $1", content_id)
            return
        await self.db.execute(f"DELETE FROM {table} WHERE id = $1", content_id)

    async def list_public_tracks(self, *, since: datetime | None) -> Sequence[Track]:
        if since is None:
            records = await self.db.fetch(
                """
                SELECT id, user_id, title, author, duration, play_count, like_count, is_public, created_at
                FROM tracks WHERE is_public
                """
            )
        else:
            records = await self.db.fetch(
                """
                SELECT id, user_id, title, author, duration, play_count, like_count, is_public, created_at
                FROM tracks WHERE is_public AND created_at >= $1
                """,
                since,
            )
        return [_track_from_record(record) for record in records]


def _track_from_record(record: asyncpg.Record) -> Track:
    return Track(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        title=str(record["title"]),
        author=record["author"],
        duration=record["duration"],
        play_count=int(record["play_count"] or 0),
        like_count=int(record["like_count"] or 0),
        is_public=bool(record["is_public"]),
        created_at=record["created_at"],
    )


class PostgresSecurityEventRepository(SecurityEventRepository):
    """Append-only; rows are inserted and read, never updated."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def record(self, event: SecurityEvent) -> None:
        await self.pool.execute(
            """
            INSERT INTO security_events (event_type, user_id, details, created_at)
            VALUES ($1, $2, $3::jsonb, $4)
            """,
            event.event_type,
            event.user_id,
            json.dumps(event.details, default=str),
            event.created_at,
        )

    async def list_events(
        self, event_types: Iterable[str], *, since: datetime, user_id: str | None = None
    ) -> Sequence[SecurityEvent]:
        where = _Where()
        where.add("event_type = ANY({}::text[])", list(event_types))
        where.add("created_at >= {}", since)
        if user_id is not None:
            where.add("user_id = {}", user_id)
        records = await self.pool.fetch(
            f"""
            SELECT id, event_type, user_id, details, created_at
            FROM security_events
            {where.sql()}
            ORDER BY created_at ASC
            """,
            *where.params,
        )
        return [
            SecurityEvent(
                id=str(record["id"]),
                event_type=str(record["event_type"]),
                user_id=str(record["user_id"]),
                details=_json(record["details"]),
                created_at=record["created_at"],
            )
            for record in records
        ]


class PostgresNotificationRepository(NotificationRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create(self, notification: Notification) -> Notification:
        await self.pool.execute(
            """
            INSERT INTO notifications (id, user_id, type, title, message, read, data, related_notification_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9)
            """,
            notification.id,
            notification.user_id,
            notification.type,
            notification.title,
            notification.message,
            notification.read,
            json.dumps(notification.data, default=str),
            notification.related_notification_id,
            notification.created_at,
        )
        return notification


class PostgresSystemMetricRepository(SystemMetricRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def list_metrics(
        self,
        *,
        metric_type: str | None = None,
        since: datetime | None = None,
        min_value: float | None = None,
        limit: int = 1000,
    ) -> Sequence[SystemMetric]:
        where = _Where()
        if metric_type is not None:
            where.add("metric_type = {}", metric_type)
        if since is not None:
            where.add("recorded_at >= {}", since)
        if min_value is not None:
            where.add("metric_value > {}", min_value)
        where.params.append(limit)
        records = await self.pool.fetch(
            f"""
            SELECT metric_type, metric_value, metadata, recorded_at
            FROM system_metrics
            {where.sql()}
            ORDER BY recorded_at DESC
            LIMIT ${len(where.params)}
            """,
            *where.params,
        )
        return [
            SystemMetric(
                metric_type=str(record["metric_type"]),
                metric_value=float(record["metric_value"]),
                metadata=_json(record["metadata"]),
                recorded_at=record["recorded_at"],
            )
            for record in records
        ]
