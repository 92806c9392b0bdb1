"""Repository interfaces and in-memory implementations for moderation data."""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Iterable, Mapping, Optional, Protocol, Sequence

from app.moderation.domain.errors import ImmutableActionError
from app.moderation.domain.models import (
    Album,
    AlbumTrack,
    ModerationAction,
    ModerationActionType,
    Notification,
    Report,
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


@dataclass(slots=True)
class ReportQuery:
    status: Optional[ReportStatus] = None
    priority: Optional[int] = None
    moderator_flagged: Optional[bool] = None
    report_type: Optional[ReportType] = None
    reported_user_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None

    def matches(self, report: Report) -> bool:
        if self.status is not None and report.status is not self.status:
            return False
        if self.priority is not None and report.priority != self.priority:
            return False
        if self.moderator_flagged is not None and report.moderator_flagged != self.moderator_flagged:
            return False
        if self.report_type is not None and report.report_type is not self.report_type:
            return False
        if self.reported_user_id is not None and report.reported_user_id != self.reported_user_id:
            return False
        if self.created_from is not None and report.created_at < self.created_from:
            return False
        if self.created_to is not None and report.created_at > self.created_to:
            return False
        return True


@dataclass(slots=True)
class ActionQuery:
    moderator_id: Optional[str] = None
    target_user_id: Optional[str] = None
    action_types: tuple[ModerationActionType, ...] = ()
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    revoked: Optional[bool] = None
    revoked_by: Optional[str] = None
    revoked_from: Optional[datetime] = None
    revoked_to: Optional[datetime] = None

    def matches(self, action: ModerationAction) -> bool:
        if self.moderator_id is not None and action.moderator_id != self.moderator_id:
            return False
        if self.target_user_id is not None and action.target_user_id != self.target_user_id:
            return False
        if self.action_types and action.action_type not in self.action_types:
            return False
        if self.target_type is not None and action.target_type != self.target_type:
            return False
        if self.target_id is not None and action.target_id != self.target_id:
            return False
        if self.created_from is not None and action.created_at < self.created_from:
            return False
        if self.created_to is not None and action.created_at > self.created_to:
            return False
        if self.revoked is not None and action.is_revoked != self.revoked:
            return False
        if self.revoked_by is not None and action.revoked_by != self.revoked_by:
            return False
        if self.revoked_from is not None and (action.revoked_at is None or action.revoked_at < self.revoked_from):
            return False
        if self.revoked_to is not None and (action.revoked_at is None or action.revoked_at > self.revoked_to):
            return False
        return True


class ReportRepository(Protocol):
    async def create(self, report: Report) -> Report:
        ...

    async def get(self, report_id: str) -> Report | None:
        ...

    async def update(self, report: Report) -> Report:
        ...

    async def find_recent(
        self, reporter_id: str, report_type: ReportType, target_id: str, *, since: datetime
    ) -> Report | None:
        ...

    async def count_by_reporter(self, reporter_id: str, *, since: datetime) -> int:
        ...

    async def list(self, query: ReportQuery) -> Sequence[Report]:
        ...


class ActionRepository(Protocol):
    async def create(self, action: ModerationAction) -> ModerationAction:
        ...

    async def get(self, action_id: str) -> ModerationAction | None:
        ...

    async def update(self, action: ModerationAction) -> ModerationAction:
        """Persist changes to an unrevoked action; reversed rows are rejected."""
        ...

    async def revoke(self, action: ModerationAction) -> ModerationAction:
        """Write revoked_at/revoked_by/metadata onto an unrevoked action."""
        ...

    async def list(self, query: ActionQuery) -> Sequence[ModerationAction]:
        ...

    async def count_by_moderator(self, moderator_id: str, *, since: datetime) -> int:
        ...


class RestrictionRepository(Protocol):
    async def create(self, restriction: UserRestriction) -> UserRestriction:
        ...

    async def get(self, restriction_id: str) -> UserRestriction | None:
        ...

    async def list_for_user(self, user_id: str) -> Sequence[UserRestriction]:
        ...

    async def deactivate(self, restriction_id: str, *, at: datetime) -> None:
        ...

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> int:
        ...

    async def deactivate_type(self, user_id: str, restriction_type: RestrictionType, *, at: datetime) -> int:
        ...


class ProfileRepository(Protocol):
    async def get_profile(self, user_id: str) -> UserProfile | None:
        ...

    async def get_role(self, user_id: str) -> UserRole:
        ...

    async def list_staff_ids(self, roles: Iterable[UserRole]) -> Sequence[str]:
        ...

    async def usernames(self, user_ids: Iterable[str]) -> Mapping[str, str]:
        ...

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        ...

    async def clear_suspension(self, user_id: str) -> None:
        ...


class ContentRepository(Protocol):
    async def get_owner(self, content_type: ReportType, content_id: str) -> str | None:
        ...

    async def get_album(self, album_id: str) -> Album | None:
        ...

    async def list_album_tracks(self, album_id: str) -> Sequence[tuple[AlbumTrack, Track]]:
        ...

    async def delete_album(self, album_id: str, *, delete_tracks: bool) -> Sequence[str]:
        """Remove the album and its junction rows, optionally with tracks; returns track ids."""
        ...

    async def delete_content(self, content_type: str, content_id: str) -> None:
        ...

    async def list_public_tracks(self, *, since: datetime | None) -> Sequence[Track]:
        ...


class SecurityEventRepository(Protocol):
    async def record(self, event: SecurityEvent) -> None:
        ...

    async def list_events(
        self, event_types: Iterable[str], *, since: datetime, user_id: str | None = None
    ) -> Sequence[SecurityEvent]:
        ...


class NotificationRepository(Protocol):
    async def create(self, notification: Notification) -> Notification:
        ...


class SystemMetricRepository(Protocol):
    async def list_metrics(
        self,
        *,
        metric_type: str | None = None,
        since: datetime | None = None,
        min_value: float | None = None,
        limit: int = 1000,
    ) -> Sequence[SystemMetric]:
        ...


class UnitOfWork(Protocol):
    def transaction(self) -> AsyncContextManager[None]:
        """Scope whose repository writes commit together or not at all.

        Nested scopes join the outermost one. Security events and notifications
        are written outside the scope and survive a rollback.
        """
        ...


class InMemoryReportRepository(ReportRepository):
    """Simple repository implementation for development and tests."""

    def __init__(self) -> None:
        self.items: dict[str, Report] = {}

    async def create(self, report: Report) -> Report:
        self.items[report.id] = replace(report)
        return replace(report)

    async def get(self, report_id: str) -> Report | None:
        report = self.items.get(report_id)
        return replace(report) if report else None

    async def update(self, report: Report) -> Report:
        if report.id not in self.items:
            raise KeyError(report.id)
        self.items[report.id] = replace(report)
        return replace(report)

    async def find_recent(
        self, reporter_id: str, report_type: ReportType, target_id: str, *, since: datetime
    ) -> Report | None:
        matches = [
            item
            for item in self.items.values()
            if item.reporter_id == reporter_id
            and item.report_type is report_type
            and item.target_id == target_id
            and item.created_at >= since
        ]
        if not matches:
            return None
        return replace(max(matches, key=lambda item: item.created_at))

    async def count_by_reporter(self, reporter_id: str, *, since: datetime) -> int:
        return sum(1 for item in self.items.values() if item.reporter_id == reporter_id and item.created_at >= since)

    async def list(self, query: ReportQuery) -> Sequence[Report]:
        return [replace(item) for item in self.items.values() if query.matches(item)]


class InMemoryActionRepository(ActionRepository):
    """Keeps actions in a dict and enforces immutability of reversed rows."""

    def __init__(self) -> None:
        self.items: dict[str, ModerationAction] = {}

    async def create(self, action: ModerationAction) -> ModerationAction:
        self.items[action.id] = replace(action)
        return replace(action)

    async def get(self, action_id: str) -> ModerationAction | None:
        action = self.items.get(action_id)
        return replace(action) if action else None

    async def update(self, action: ModerationAction) -> ModerationAction:
        stored = self.items.get(action.id)
        if stored is None:
            raise KeyError(action.id)
        if stored.is_revoked:
            raise ImmutableActionError(action.id)
        if action.revoked_at is not None or action.revoked_by is not None:
            raise ImmutableActionError(action.id)
        self.items[action.id] = replace(action)
        return replace(action)

    async def revoke(self, action: ModerationAction) -> ModerationAction:
        stored = self.items.get(action.id)
        if stored is None:
            raise KeyError(action.id)
        if stored.is_revoked:
            raise ImmutableActionError(action.id)
        updated = replace(
            stored,
            revoked_at=action.revoked_at,
            revoked_by=action.revoked_by,
            metadata=action.metadata,
        )
        self.items[action.id] = updated
        return replace(updated)

    async def list(self, query: ActionQuery) -> Sequence[ModerationAction]:
        return [replace(item) for item in self.items.values() if query.matches(item)]

    async def count_by_moderator(self, moderator_id: str, *, since: datetime) -> int:
        return sum(
            1 for item in self.items.values() if item.moderator_id == moderator_id and item.created_at >= since
        )


class InMemoryRestrictionRepository(RestrictionRepository):
    def __init__(self) -> None:
        self.items: dict[str, UserRestriction] = {}

    async def create(self, restriction: UserRestriction) -> UserRestriction:
        self.items[restriction.id] = replace(restriction)
        return replace(restriction)

    async def get(self, restriction_id: str) -> UserRestriction | None:
        restriction = self.items.get(restriction_id)
        return replace(restriction) if restriction else None

    async def list_for_user(self, user_id: str) -> Sequence[UserRestriction]:
        rows = [replace(item) for item in self.items.values() if item.user_id == user_id]
        return sorted(rows, key=lambda item: item.created_at, reverse=True)

    async def deactivate(self, restriction_id: str, *, at: datetime) -> None:
        restriction = self.items.get(restriction_id)
        if restriction is not None:
            restriction.is_active = False
            restriction.updated_at = at

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> int:
        return self._deactivate_where(lambda item: item.related_action_id == action_id, at)

    async def deactivate_type(self, user_id: str, restriction_type: RestrictionType, *, at: datetime) -> int:
        return self._deactivate_where(
            lambda item: item.user_id == user_id and item.restriction_type is restriction_type,
            at,
        )

    def _deactivate_where(self, predicate, at: datetime) -> int:
        count = 0
        for item in self.items.values():
            if item.is_active and predicate(item):
                item.is_active = False
                item.updated_at = at
                count += 1
        return count


class InMemoryProfileRepository(ProfileRepository):
    def __init__(self) -> None:
        self.profiles: dict[str, UserProfile] = {}
        self.roles: dict[str, UserRole] = {}

    def add(self, profile: UserProfile, role: UserRole = UserRole.USER) -> None:
        self.profiles[profile.user_id] = profile
        self.roles[profile.user_id] = role

    async def get_profile(self, user_id: str) -> UserProfile | None:
        profile = self.profiles.get(user_id)
        return replace(profile) if profile else None

    async def get_role(self, user_id: str) -> UserRole:
        return self.roles.get(user_id, UserRole.USER)

    async def list_staff_ids(self, roles: Iterable[UserRole]) -> Sequence[str]:
        wanted = set(roles)
        return [user_id for user_id, role in self.roles.items() if role in wanted]

    async def usernames(self, user_ids: Iterable[str]) -> Mapping[str, str]:
        return {user_id: self.profiles[user_id].username for user_id in user_ids if user_id in self.profiles}

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        profile = self.profiles.get(user_id)
        if profile is not None:
            profile.suspended_until = until
            profile.suspension_reason = reason

    async def clear_suspension(self, user_id: str) -> None:
        profile = self.profiles.get(user_id)
        if profile is not None:
            profile.suspended_until = None
            profile.suspension_reason = None


class InMemoryContentRepository(ContentRepository):
    """Holds albums, tracks and simple owned content (posts, comments)."""

    def __init__(self) -> None:
        self.albums: dict[str, Album] = {}
        self.tracks: dict[str, Track] = {}
        self.album_tracks: list[AlbumTrack] = []
        self.owned: dict[tuple[str, str], str] = {}

    def add_album(self, album: Album, tracks: Sequence[Track] = ()) -> None:
        self.albums[album.id] = album
        for position, track in enumerate(tracks, start=1):
            self.tracks[track.id] = track
            self.album_tracks.append(AlbumTrack(album_id=album.id, track_id=track.id, position=position))

    def add_content(self, content_type: str, content_id: str, owner_id: str) -> None:
        self.owned[(content_type, content_id)] = owner_id

    async def get_owner(self, content_type: ReportType, content_id: str) -> str | None:
        if content_type is ReportType.USER:
            return content_id
        if content_type is ReportType.ALBUM:
            album = self.albums.get(content_id)
            return album.user_id if album else None
        if content_type is ReportType.TRACK and content_id in self.tracks:
            return self.tracks[content_id].user_id
        return self.owned.get((content_type.value, content_id))

    async def get_album(self, album_id: str) -> Album | None:
        album = self.albums.get(album_id)
        return replace(album) if album else None

    async def list_album_tracks(self, album_id: str) -> Sequence[tuple[AlbumTrack, Track]]:
        rows = [
            (link, self.tracks[link.track_id])
            for link in self.album_tracks
            if link.album_id == album_id and link.track_id in self.tracks
        ]
        return sorted(rows, key=lambda row: row[0].position)

    async def delete_album(self, album_id: str, *, delete_tracks: bool) -> Sequence[str]:
        track_ids = [link.track_id for link in self.album_tracks if link.album_id == album_id]
        if delete_tracks:
            for track_id in track_ids:
                self.tracks.pop(track_id, None)
        self.album_tracks = [link for link in self.album_tracks if link.album_id != album_id]
        self.albums.pop(album_id, None)
        return track_ids

    async def delete_content(self, content_type: str, content_id: str) -> None:
        if content_type == ReportType.TRACK.value:
            self.tracks.pop(content_id, None)
            self.album_tracks = [link for link in self.album_tracks if link.track_id != content_id]
        self.owned.pop((content_type, content_id), None)

    async def list_public_tracks(self, *, since: datetime | None) -> Sequence[Track]:
        return [
            replace(track)
            for track in self.tracks.values()
            if track.is_public and (since is None or track.created_at >= since)
        ]


class InMemorySecurityEventRepository(SecurityEventRepository):
    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    async def record(self, event: SecurityEvent) -> None:
        self.events.append(event)

    async def list_events(
        self, event_types: Iterable[str], *, since: datetime, user_id: str | None = None
    ) -> Sequence[SecurityEvent]:
        wanted = set(event_types)
        return [
            event
            for event in self.events
            if event.event_type in wanted
            and event.created_at >= since
            and (user_id is None or event.user_id == user_id)
        ]


class InMemoryNotificationRepository(NotificationRepository):
    def __init__(self) -> None:
        self.items: list[Notification] = []

    async def create(self, notification: Notification) -> Notification:
        self.items.append(notification)
        return notification


class InMemorySystemMetricRepository(SystemMetricRepository):
    def __init__(self) -> None:
        self.items: list[SystemMetric] = []

    async def list_metrics(
        self,
        *,
        metric_type: str | None = None,
        since: datetime | None = None,
        min_value: float | None = None,
        limit: int = 1000,
    ) -> Sequence[SystemMetric]:
        rows = [
            item
            for item in self.items
            if (metric_type is None or item.metric_type == metric_type)
            and (since is None or item.recorded_at >= since)
            and (min_value is None or item.metric_value > min_value)
        ]
        rows.sort(key=lambda item: item.recorded_at, reverse=True)
        return rows[:limit]


class InMemoryUnitOfWork(UnitOfWork):
    """Snapshots the given stores on entry and restores them if the scope raises."""

    def __init__(self, *stores: object) -> None:
        self.stores = stores
        self._depth = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return
        snapshots = [copy.deepcopy(vars(store)) for store in self.stores]
        self._depth = 1
        try:
            yield
        except BaseException:
            for store, snapshot in zip(self.stores, snapshots):
                vars(store).clear()
                vars(store).update(snapshot)
            raise
        finally:
            self._depth = 0
