"""Reversal endpoints and the immutability audit tools for admins."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.infra.auth import get_actor_context
from app.moderation.api.schemas import ActionOut, ModificationIn, ReasonIn, RestrictionOut
from app.moderation.domain.authorization import ActorContext, require_admin
from app.moderation.domain.container import get_reversal_service
from app.moderation.domain.reversal_service import ReversalService

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-reversals"])


def get_reversal_service_dep() -> ReversalService:
    return get_reversal_service()


def _optional_action(action) -> Optional[dict]:
    return ActionOut.from_action(action).model_dump(mode="json") if action is not None else None


@router.post("/actions/{action_id}/revoke", response_model=ActionOut)
async def revoke_action(
    action_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> ActionOut:
    action = await service.revoke_action(actor, action_id, payload.reason)
    return ActionOut.from_action(action)


@router.post("/restrictions/{restriction_id}/remove", response_model=RestrictionOut)
async def remove_restriction(
    restriction_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> RestrictionOut:
    restriction = await service.remove_user_restriction(actor, restriction_id, payload.reason)
    return RestrictionOut.from_restriction(restriction)


@router.post("/users/{user_id}/lift-suspension")
async def lift_suspension(
    user_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    action = await service.lift_suspension(actor, user_id, payload.reason)
    return {"user_id": user_id, "revoked_action": _optional_action(action)}


@router.post("/users/{user_id}/remove-ban")
async def remove_ban(
    user_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    action = await service.remove_ban(actor, user_id, payload.reason)
    return {"user_id": user_id, "revoked_action": _optional_action(action)}


@router.get("/actions/{action_id}/immutability")
async def verify_immutability(
    action_id: str,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    require_admin(actor, "Only admins can audit reversal records")
    report = await service.verify_reversal_immutability(action_id)
    return {
        "is_immutable": report.is_immutable,
        "violations": list(report.violations),
        "action": ActionOut.from_action(report.action).model_dump(mode="json"),
    }


@router.post("/actions/{action_id}/modification-attempts")
async def attempt_modification(
    action_id: str,
    payload: ModificationIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    require_admin(actor, "Only admins can audit reversal records")
    attempt = await service.attempt_reversal_modification(actor, action_id, payload.modifications)
    return {
        "prevented": attempt.prevented,
        "error": attempt.error,
        "security_event_logged": attempt.security_event_logged,
    }


@router.get("/security/suspicious-reversals")
async def suspicious_reversals(
    user_id: Optional[str] = None,
    window_hours: int = Query(default=24, ge=1, le=720),
    service: ReversalService = Depends(get_reversal_service_dep),
    actor: ActorContext = Depends(get_actor_context),
) -> dict:
    require_admin(actor, "Only admins can audit reversal records")
    found = await service.detect_suspicious_reversal_activity(user_id, window_hours)
    return {
        "suspicious_activity_detected": found.suspicious_activity_detected,
        "patterns": [
            {
                "type": item.type,
                "severity": item.severity,
                "description": item.description,
                "count": item.count,
                "user_ids": list(item.user_ids),
            }
            for item in found.patterns
        ],
    }
