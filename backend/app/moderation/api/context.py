"""Review-panel context for a reported user or album."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from app.infra.auth import get_actor_context
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.container import get_context_service
from app.moderation.domain.context import ContextService

router = APIRouter(prefix="/api/mod/v1/context", tags=["moderation-context"])


def get_context_service_dep() -> ContextService:
    return get_context_service()


@router.get("/users/{user_id}")
async def profile_context(
    user_id: str,
    service: ContextService = Depends(get_context_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    return asdict(await service.get_profile_context(actor, user_id))


@router.get("/albums/{album_id}")
async def album_context(
    album_id: str,
    service: ContextService = Depends(get_context_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    return asdict(await service.fetch_album_context(actor, album_id))
