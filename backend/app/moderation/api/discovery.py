"""Public discovery rankings."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.infra.auth import get_actor_context
from app.moderation.domain.authorization import ActorContext, require_admin
from app.moderation.domain.container import get_trending_service
from app.moderation.domain.trending import TrendingService

router = APIRouter(prefix="/api/mod/v1/trending", tags=["discovery"])


def get_trending_service_dep() -> TrendingService:
    return get_trending_service()


@router.get("/tracks")
async def trending_tracks(
    days: int = Query(default=7, ge=0, le=365),
    service: TrendingService = Depends(get_trending_service_dep),
) -> list[dict]:
    return await service.get_trending_tracks(days)


@router.get("/creators")
async def popular_creators(
    days: int = Query(default=7, ge=0, le=365),
    service: TrendingService = Depends(get_trending_service_dep),
) -> list[dict]:
    return await service.get_popular_creators(days)


@router.delete("/cache")
async def clear_trending_cache(
    service: TrendingService = Depends(get_trending_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    require_admin(actor, "Only admins can clear discovery caches")
    return {"cleared": await service.clear_cache()}
