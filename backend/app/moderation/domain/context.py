"""Read-only views assembled for the moderator review panel."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.moderation.domain.authorization import ActorContext, require_moderator
from app.moderation.domain.errors import NotFoundError, wrap_unexpected
from app.moderation.domain.models import ModerationActionType
from app.moderation.domain.repositories import (
    ActionQuery,
    ActionRepository,
    ContentRepository,
    ProfileRepository,
    ReportQuery,
    ReportRepository,
)
from app.moderation.domain.validation import require_uuid

RECENT_REPORT_DAYS = 30
HISTORY_LIMIT = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class HistoryItem:
    action_type: ModerationActionType
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None


@dataclass(slots=True)
class ProfileContext:
    user_id: str
    username: str
    avatar_url: Optional[str]
    join_date: datetime
    account_age_days: int
    recent_report_count: int
    moderation_history: list[HistoryItem] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class AlbumTrackSummary:
    id: str
    title: str
    duration: Optional[int]
    position: int


@dataclass(slots=True)
class AlbumContext:
    id: str
    name: str
    description: Optional[str]
    cover_image_url: Optional[str]
    user_id: str
    is_public: bool
    created_at: datetime
    tracks: list[AlbumTrackSummary]
    track_count: int
    total_duration: Optional[int]


@dataclass
class ContextService:
    profiles: ProfileRepository
    reports: ReportRepository
    actions: ActionRepository
    content: ContentRepository
    clock: Callable[[], datetime] = _now

    @wrap_unexpected("fetching profile context")
    async def get_profile_context(self, actor: ActorContext, user_id: str) -> ProfileContext:
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        require_moderator(actor)
        profile = await self.profiles.get_profile(user_id)
        if profile is None:
            raise NotFoundError("User profile not found", details={"user_id": user_id})

        now = self.clock()
        recent = await self.reports.list(
            ReportQuery(reported_user_id=user_id, created_from=now - timedelta(days=RECENT_REPORT_DAYS))
        )
        actions = sorted(
            await self.actions.list(ActionQuery(target_user_id=user_id)),
            key=lambda item: item.created_at,
            reverse=True,
        )
        return ProfileContext(
            user_id=profile.user_id,
            username=profile.username,
            avatar_url=profile.avatar_url,
            join_date=profile.created_at,
            account_age_days=(now - profile.created_at).days,
            recent_report_count=len(recent),
            moderation_history=[
                HistoryItem(
                    action_type=item.action_type,
                    reason=item.reason,
                    created_at=item.created_at,
                    expires_at=item.expires_at,
                )
                for item in actions[:HISTORY_LIMIT]
            ],
        )

    @wrap_unexpected("fetching album context")
    async def fetch_album_context(self, actor: ActorContext, album_id: str) -> AlbumContext:
        require_uuid(album_id, message="Invalid album ID format", field_name="album_id")
        require_moderator(actor)
        album = await self.content.get_album(album_id)
        if album is None:
            raise NotFoundError("Album not found", details={"album_id": album_id})

        linked = sorted(await self.content.list_album_tracks(album_id), key=lambda pair: pair[0].position)
        tracks = [
            AlbumTrackSummary(id=track.id, title=track.title, duration=track.duration, position=link.position)
            for link, track in linked
        ]
        total = sum(item.duration or 0 for item in tracks)
        return AlbumContext(
            id=album.id,
            name=album.name,
            description=album.description,
            cover_image_url=album.cover_image_url,
            user_id=album.user_id,
            is_public=album.is_public,
            created_at=album.created_at,
            tracks=tracks,
            track_count=len(tracks),
            total_duration=total or None,
        )
