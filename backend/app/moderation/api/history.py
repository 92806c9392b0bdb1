"""Audit trail: per-user history, reversal history, action logs and CSV exports."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from app.infra.auth import get_actor_context, get_staff_actor
from app.moderation.api.schemas import ActionOut, history_entry_out, reversal_entry_out
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.container import get_history_service
from app.moderation.domain.history import ActionLogFilters, HistoryService, ReversalHistoryFilters

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-history"])


def get_history_service_dep() -> HistoryService:
    return get_history_service()


def _reversal_filters(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    moderator_id: Optional[str] = None,
    action_type: Optional[str] = None,
    reversal_reason: Optional[str] = None,
    target_user_id: Optional[str] = None,
    revoked_by: Optional[str] = None,
) -> ReversalHistoryFilters:
    return ReversalHistoryFilters(
        start_date=start_date,
        end_date=end_date,
        moderator_id=moderator_id,
        action_type=action_type,
        reversal_reason=reversal_reason,
        target_user_id=target_user_id,
        revoked_by=revoked_by,
    )


def _log_filters(
    action_type: Optional[str] = None,
    moderator_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    reversed_only: bool = False,
    non_reversed_only: bool = False,
    recently_reversed: bool = False,
    expired_only: bool = False,
    non_expired_only: bool = False,
) -> ActionLogFilters:
    return ActionLogFilters(
        action_type=action_type,
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        start_date=start_date,
        end_date=end_date,
        search_query=search,
        reversed_only=reversed_only,
        non_reversed_only=non_reversed_only,
        recently_reversed=recently_reversed,
        expired_only=expired_only,
        non_expired_only=non_expired_only,
    )


def _csv(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/users/{user_id}/history")
async def user_history(
    user_id: str,
    include_revoked: bool = True,
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_staff_actor),
) -> list[dict]:
    entries = await service.get_user_moderation_history(user_id, include_revoked)
    return [history_entry_out(entry) for entry in entries]


@router.get("/users/{user_id}/offender-status")
async def offender_status(
    user_id: str,
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_staff_actor),
) -> dict:
    repeat = await service.detect_repeat_offender(user_id)
    timeline = await service.calculate_violation_timeline(user_id)
    return {
        "is_repeat_offender": repeat,
        "timeline": None
        if timeline is None
        else {
            "last_7_days": timeline.last_7_days,
            "last_30_days": timeline.last_30_days,
            "last_90_days": timeline.last_90_days,
            "message": timeline.message,
        },
    }


@router.get("/reversals")
async def reversal_history(
    filters: ReversalHistoryFilters = Depends(_reversal_filters),
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> list[dict]:
    entries = await service.get_reversal_history(actor, filters)
    return [reversal_entry_out(entry) for entry in entries]


@router.get("/logs")
async def action_logs(
    filters: ActionLogFilters = Depends(_log_filters),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    rows, total = await service.fetch_moderation_logs(actor, filters, limit=limit, offset=offset)
    return {"items": [ActionOut.from_action(item) for item in rows], "total": total}


@router.get("/exports/action-logs.csv")
async def export_action_logs(
    filters: ActionLogFilters = Depends(_log_filters),
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> Response:
    return _csv(await service.export_action_logs_csv(actor, filters), "action-logs.csv")


@router.get("/exports/reversal-history.csv")
async def export_reversal_history(
    filters: ReversalHistoryFilters = Depends(_reversal_filters),
    service: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> Response:
    return _csv(await service.export_reversal_history_csv(actor, filters), "reversal-history.csv")
