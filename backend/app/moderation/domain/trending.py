"""Discovery rankings: trending tracks and popular creators."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence

from app.moderation.domain.analytics import calculate_trending_score
from app.moderation.domain.caching import MetricsCache, cache_key
from app.moderation.domain.models import Track
from app.moderation.domain.repositories import ContentRepository, ProfileRepository
from app.settings import settings

logger = logging.getLogger(__name__)

TRENDING_TRACKS_LIMIT = 10
POPULAR_CREATORS_LIMIT = 5
CREATOR_PLAY_WEIGHT = 0.6
CREATOR_LIKE_WEIGHT = 0.4


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class TrendingTrack:
    track_id: str
    title: str
    author: Optional[str]
    play_count: int
    like_count: int
    trending_score: float
    created_at: str


@dataclass(slots=True, frozen=True)
class PopularCreator:
    user_id: str
    username: Optional[str]
    total_plays: int
    total_likes: int
    track_count: int
    creator_score: float


def _in_window(track: Track, days: int, now: datetime) -> bool:
    # 0 days means all time
    return days <= 0 or track.created_at >= now - timedelta(days=days)


def rank_trending_tracks(
    tracks: Iterable[Track], days: int, now: datetime, *, limit: int = TRENDING_TRACKS_LIMIT
) -> list[TrendingTrack]:
    ranked = [
        TrendingTrack(
            track_id=track.id,
            title=track.title,
            author=track.author,
            play_count=track.play_count,
            like_count=track.like_count,
            trending_score=round(calculate_trending_score(track.play_count, track.like_count), 2),
            created_at=track.created_at.isoformat(),
        )
        for track in tracks
        if _in_window(track, days, now)
    ]
    ranked.sort(key=lambda item: (-item.trending_score, item.track_id))
    return ranked[:limit]


def rank_popular_creators(
    tracks: Iterable[Track],
    days: int,
    now: datetime,
    *,
    usernames: Optional[dict[str, str]] = None,
    limit: int = POPULAR_CREATORS_LIMIT,
) -> list[PopularCreator]:
    usernames = usernames or {}
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
    for track in tracks:
        if not _in_window(track, days, now):
            continue
        entry = totals[track.user_id]
        entry[0] += track.play_count
        entry[1] += track.like_count
        entry[2] += 1
    creators = [
        PopularCreator(
            user_id=user_id,
            username=usernames.get(user_id),
            total_plays=plays,
            total_likes=likes,
            track_count=count,
            creator_score=round(plays * CREATOR_PLAY_WEIGHT + likes * CREATOR_LIKE_WEIGHT, 2),
        )
        for user_id, (plays, likes, count) in totals.items()
        # creators without any engagement are not ranked
        if plays or likes
    ]
    creators.sort(key=lambda item: (-item.creator_score, item.user_id))
    return creators[:limit]


@dataclass
class TrendingService:
    content: ContentRepository
    profiles: ProfileRepository
    cache: Optional[MetricsCache] = None
    clock: Callable[[], datetime] = _now

    async def _tracks(self, days: int) -> Sequence[Track]:
        now = self.clock()
        return await self.content.list_public_tracks(since=now - timedelta(days=days) if days > 0 else None)

    async def _cached(self, name: str, days: int, builder) -> list[dict]:
        if self.cache is None:
            return await builder()
        return await self.cache.get_or_build(
            cache_key(name, days=days), ttl=settings.trending_cache_ttl_seconds, builder=builder
        )

    async def get_trending_tracks(self, days: int = 7) -> list[dict]:
        """Top tracks by trending score; an empty list when the store is unavailable."""

        async def build() -> list[dict]:
            ranked = rank_trending_tracks(await self._tracks(days), days, self.clock())
            return [asdict(item) for item in ranked]

        try:
            return await self._cached("trending_tracks", days, build)
        except Exception:  # noqa: BLE001
            logger.exception("trending tracks unavailable", extra={"days": days})
            return []

    async def get_popular_creators(self, days: int = 7) -> list[dict]:
        async def build() -> list[dict]:
            tracks = await self._tracks(days)
            usernames = dict(await self.profiles.usernames({track.user_id for track in tracks}))
            ranked = rank_popular_creators(tracks, days, self.clock(), usernames=usernames)
            return [asdict(item) for item in ranked]

        try:
            return await self._cached("popular_creators", days, build)
        except Exception:  # noqa: BLE001
            logger.exception("popular creators unavailable", extra={"days": days})
            return []

    async def clear_cache(self) -> int:
        if self.cache is None:
            return 0
        return await self.cache.clear()
