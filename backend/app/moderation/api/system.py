"""Admin-only platform health dashboards."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.infra.auth import get_actor_context
from app.moderation.domain.authorization import ActorContext, require_admin
from app.moderation.domain.container import get_health_service
from app.moderation.domain.system_health import SystemHealthService

router = APIRouter(prefix="/api/mod/v1/system", tags=["system-health"])

ADMIN_ONLY = "Only admins can access system health"


def get_health_service_dep() -> SystemHealthService:
    return get_health_service()


async def get_admin_actor(actor: ActorContext = Depends(get_actor_context)) -> ActorContext:
    require_admin(actor, ADMIN_ONLY)
    return actor


@router.get("/health")
async def system_health(
    service: SystemHealthService = Depends(get_health_service_dep),
    actor: ActorContext = Depends(get_admin_actor),
) -> dict[str, Any]:
    return await service.fetch_system_health()


@router.get("/performance")
async def performance_metrics(
    hours_back: int = Query(default=24, ge=1, le=720),
    service: SystemHealthService = Depends(get_health_service_dep),
    actor: ActorContext = Depends(get_admin_actor),
) -> dict[str, Any]:
    return await service.fetch_performance_metrics(hours_back)


@router.get("/slow-queries")
async def slow_queries(
    service: SystemHealthService = Depends(get_health_service_dep),
    actor: ActorContext = Depends(get_admin_actor),
) -> list[dict[str, Any]]:
    return await service.fetch_slow_queries()


@router.get("/errors")
async def error_logs(
    limit: int = Query(default=50, ge=1, le=500),
    service: SystemHealthService = Depends(get_health_service_dep),
    actor: ActorContext = Depends(get_admin_actor),
) -> list[dict[str, Any]]:
    return await service.fetch_error_logs(limit)
