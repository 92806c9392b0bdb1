"""Report intake, moderator flags and the review queue."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.infra.auth import get_actor_context
from app.moderation.api.schemas import FlagIn, ReportIn, ReportOut
from app.moderation.domain.authorization import ActorContext, require_moderator
from app.moderation.domain.container import get_history_service, get_report_repository, get_report_service
from app.moderation.domain.errors import NotFoundError
from app.moderation.domain.history import HistoryService
from app.moderation.domain.models import ReportStatus, ReportType
from app.moderation.domain.reports_service import ModeratorFlagParams, QueueFilters, ReportParams, ReportService
from app.moderation.domain.repositories import ReportRepository
from app.moderation.domain.validation import coerce_enum

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-reports"])


def get_report_service_dep() -> ReportService:
    return get_report_service()


def get_history_service_dep() -> HistoryService:
    return get_history_service()


def get_report_repository_dep() -> ReportRepository:
    return get_report_repository()


@router.post("/reports", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def submit_report(
    payload: ReportIn,
    service: ReportService = Depends(get_report_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> ReportOut:
    report = await service.submit_report(
        actor,
        ReportParams(
            report_type=payload.report_type,
            target_id=payload.target_id,
            reason=payload.reason,
            description=payload.description,
        ),
    )
    return ReportOut.from_report(report)


@router.post("/flags", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def flag_content(
    payload: FlagIn,
    service: ReportService = Depends(get_report_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> ReportOut:
    report = await service.moderator_flag_content(
        actor,
        ModeratorFlagParams(
            report_type=payload.report_type,
            target_id=payload.target_id,
            reason=payload.reason,
            internal_notes=payload.internal_notes,
            priority=payload.priority,
        ),
    )
    return ReportOut.from_report(report)


@router.get("/queue", response_model=list[ReportOut])
async def moderation_queue(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    priority: Optional[int] = Query(default=None, ge=1, le=5),
    moderator_flagged: Optional[bool] = None,
    report_type: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    service: ReportService = Depends(get_report_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> list[ReportOut]:
    filters = QueueFilters(
        status=coerce_enum(ReportStatus, status_filter, message="Invalid status", field_name="status")
        if status_filter
        else None,
        priority=priority,
        moderator_flagged=moderator_flagged,
        report_type=coerce_enum(ReportType, report_type, message="Invalid report type", field_name="report_type")
        if report_type
        else None,
        start_date=start_date,
        end_date=end_date,
    )
    rows = await service.fetch_moderation_queue(actor, filters)
    return [ReportOut.from_report(item) for item in rows]


@router.get("/reports/{report_id}/previous-reversals")
async def previous_reversals(
    report_id: str,
    reports: ReportRepository = Depends(get_report_repository_dep),
    history: HistoryService = Depends(get_history_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    require_moderator(actor)
    report = await reports.get(report_id)
    if report is None:
        raise NotFoundError("Report not found", details={"report_id": report_id})
    summary = await history.check_previous_reversals(report)
    recent = summary.most_recent_reversal
    return {
        "has_previous_reversals": summary.has_previous_reversals,
        "reversal_count": summary.reversal_count,
        "most_recent_reversal": None
        if recent is None
        else {
            "action_type": recent.action_type.value,
            "reversed_at": recent.reversed_at.isoformat(),
            "reversal_reason": recent.reversal_reason,
            "moderator_id": recent.moderator_id,
        },
    }
