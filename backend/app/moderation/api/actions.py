"""Moderation actions, standalone restrictions and user restriction status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from app.infra.auth import get_actor_context, get_staff_actor
from app.moderation.api.schemas import ActionIn, ActionOut, ActionResultOut, RestrictionIn, RestrictionOut
from app.moderation.domain.actions_service import ActionService, CascadeOptions, ModerationActionParams
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.container import get_action_service

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-actions"])


def get_action_service_dep() -> ActionService:
    return get_action_service()


@router.post("/actions", response_model=ActionResultOut, status_code=status.HTTP_201_CREATED)
async def take_action(
    payload: ActionIn,
    service: ActionService = Depends(get_action_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> ActionResultOut:
    cascade = payload.cascade
    result = await service.take_moderation_action(
        actor,
        ModerationActionParams(
            report_id=payload.report_id,
            action_type=payload.action_type,
            target_user_id=payload.target_user_id,
            reason=payload.reason,
            target_type=payload.target_type,
            target_id=payload.target_id,
            duration_days=payload.duration_days,
            internal_notes=payload.internal_notes,
            notification_message=payload.notification_message,
            restriction_type=payload.restriction_type,
            cascade=CascadeOptions(remove_album=cascade.remove_album, remove_tracks=cascade.remove_tracks)
            if cascade
            else None,
            evidence_verified=payload.evidence_verified,
            verification_notes=payload.verification_notes,
        ),
    )
    return ActionResultOut(
        action=ActionOut.from_action(result.action),
        cascaded_actions=[ActionOut.from_action(item) for item in result.cascaded_actions],
        records_created=result.records_created,
    )


@router.post("/restrictions", response_model=RestrictionOut, status_code=status.HTTP_201_CREATED)
async def apply_restriction(
    payload: RestrictionIn,
    service: ActionService = Depends(get_action_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> RestrictionOut:
    restriction = await service.apply_restriction(
        actor,
        payload.user_id,
        payload.restriction_type,
        payload.reason,
        duration_days=payload.duration_days,
    )
    return RestrictionOut.from_restriction(restriction)


@router.get("/users/{user_id}/restrictions", response_model=list[RestrictionOut])
async def active_restrictions(
    user_id: str,
    service: ActionService = Depends(get_action_service_dep),
    actor: ActorContext = Depends(get_staff_actor),
) -> list[RestrictionOut]:
    rows = await service.get_user_active_restrictions(user_id)
    return [RestrictionOut.from_restriction(item) for item in rows]


@router.get("/me/permissions")
async def my_permission(
    action: str = Query(...),
    service: ActionService = Depends(get_action_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    check = await service.can_user_perform_action(actor.user_id, action)
    return {"allowed": check.allowed, "reason": check.reason}


@router.get("/users/{user_id}/suspension")
async def suspension_status(
    user_id: str,
    service: ActionService = Depends(get_action_service_dep),
    actor: ActorContext = Depends(get_staff_actor),
) -> dict:
    state = await service.get_user_suspension_status(user_id)
    return {
        "is_suspended": state.is_suspended,
        "suspended_until": state.suspended_until.isoformat() if state.suspended_until else None,
        "suspension_reason": state.suspension_reason,
        "is_permanent": state.is_permanent,
        "days_remaining": state.days_remaining,
    }
