"""Moderation dashboards: queue metrics and reversal analytics."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from app.infra.auth import get_actor_context
from app.moderation.domain.analytics import MetricsService
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.container import get_metrics_service

router = APIRouter(prefix="/api/mod/v1/metrics", tags=["moderation-metrics"])


def get_metrics_service_dep() -> MetricsService:
    return get_metrics_service()


@router.get("")
async def moderation_metrics(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    include_sla: bool = False,
    include_trends: bool = False,
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.calculate_moderation_metrics(
        actor,
        start_date=start_date,
        end_date=end_date,
        include_sla=include_sla,
        include_trends=include_trends,
    )


@router.get("/reversal-rate")
async def reversal_rate(
    start_date: str = Query(...),
    end_date: str = Query(...),
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.calculate_reversal_rate(actor, start_date, end_date)


@router.get("/reversals")
async def reversal_metrics(
    start_date: str = Query(...),
    end_date: str = Query(...),
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.get_reversal_metrics(actor, start_date, end_date)


@router.get("/reversals/moderators/{moderator_id}")
async def moderator_reversal_stats(
    moderator_id: str,
    start_date: str = Query(...),
    end_date: str = Query(...),
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.get_moderator_reversal_stats(actor, moderator_id, start_date, end_date)


@router.get("/reversals/timing")
async def reversal_time_metrics(
    start_date: str = Query(...),
    end_date: str = Query(...),
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.get_reversal_time_metrics(actor, start_date, end_date)


@router.get("/reversals/patterns")
async def reversal_patterns(
    start_date: str = Query(...),
    end_date: str = Query(...),
    service: MetricsService = Depends(get_metrics_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict[str, Any]:
    return await service.get_reversal_patterns(actor, start_date, end_date)
