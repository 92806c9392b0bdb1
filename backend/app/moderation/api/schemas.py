"""Request and response models shared by the moderation routers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.moderation.domain.history import HistoryEntry, ReversalHistoryEntry
from app.moderation.domain.models import ModerationAction, Report, StateChange, UserRestriction


class ReportIn(BaseModel):
    report_type: str
    target_id: str
    reason: str
    description: Optional[str] = None


class FlagIn(BaseModel):
    report_type: str
    target_id: str
    reason: str
    internal_notes: Optional[str] = None
    priority: Optional[int] = None


class CascadeIn(BaseModel):
    remove_album: bool = False
    remove_tracks: bool = False


class ActionIn(BaseModel):
    report_id: str
    action_type: str
    target_user_id: str
    reason: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    duration_days: Optional[int] = None
    internal_notes: Optional[str] = None
    notification_message: Optional[str] = None
    restriction_type: Optional[str] = None
    cascade: Optional[CascadeIn] = None
    evidence_verified: bool = False
    verification_notes: Optional[str] = None


class RestrictionIn(BaseModel):
    user_id: str
    restriction_type: str
    reason: str
    duration_days: Optional[int] = None


class ReasonIn(BaseModel):
    reason: str = ""


class ModificationIn(BaseModel):
    modifications: dict[str, Any] = Field(default_factory=dict)


class ReportOut(BaseModel):
    id: str
    reporter_id: str
    reported_user_id: Optional[str]
    report_type: str
    target_id: str
    reason: str
    description: Optional[str]
    status: str
    priority: int
    moderator_flagged: bool
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    resolution_notes: Optional[str]
    action_taken: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]

    @classmethod
    def from_report(cls, report: Report) -> "ReportOut":
        return cls(
            id=report.id,
            reporter_id=report.reporter_id,
            reported_user_id=report.reported_user_id,
            report_type=report.report_type.value,
            target_id=report.target_id,
            reason=report.reason.value,
            description=report.description,
            status=report.status.value,
            priority=report.priority,
            moderator_flagged=report.moderator_flagged,
            reviewed_by=report.reviewed_by,
            reviewed_at=report.reviewed_at,
            resolution_notes=report.resolution_notes,
            action_taken=report.action_taken,
            created_at=report.created_at,
            updated_at=report.updated_at,
        )


class ActionOut(BaseModel):
    id: str
    moderator_id: str
    target_user_id: str
    action_type: str
    target_type: Optional[str]
    target_id: Optional[str]
    reason: str
    duration_days: Optional[int]
    expires_at: Optional[datetime]
    related_report_id: Optional[str]
    internal_notes: Optional[str]
    notification_sent: bool
    notification_id: Optional[str]
    metadata: Optional[dict[str, Any]]
    created_at: datetime
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]

    @classmethod
    def from_action(cls, action: ModerationAction) -> "ActionOut":
        return cls(
            id=action.id,
            moderator_id=action.moderator_id,
            target_user_id=action.target_user_id,
            action_type=action.action_type.value,
            target_type=action.target_type,
            target_id=action.target_id,
            reason=action.reason,
            duration_days=action.duration_days,
            expires_at=action.expires_at,
            related_report_id=action.related_report_id,
            internal_notes=action.internal_notes,
            notification_sent=action.notification_sent,
            notification_id=action.notification_id,
            metadata=action.metadata.to_json(),
            created_at=action.created_at,
            revoked_at=action.revoked_at,
            revoked_by=action.revoked_by,
        )


class ActionResultOut(BaseModel):
    action: ActionOut
    cascaded_actions: list[ActionOut]
    records_created: int


class RestrictionOut(BaseModel):
    id: str
    user_id: str
    restriction_type: str
    reason: str
    applied_by: str
    expires_at: Optional[datetime]
    is_active: bool
    related_action_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_restriction(cls, restriction: UserRestriction) -> "RestrictionOut":
        return cls(
            id=restriction.id,
            user_id=restriction.user_id,
            restriction_type=restriction.restriction_type.value,
            reason=restriction.reason,
            applied_by=restriction.applied_by,
            expires_at=restriction.expires_at,
            is_active=restriction.is_active,
            related_action_id=restriction.related_action_id,
            created_at=restriction.created_at,
        )


def _state_changes(changes: tuple[StateChange, ...]) -> list[dict[str, Any]]:
    return [change.to_json() for change in changes]


def _seconds(value) -> Optional[float]:
    return value.total_seconds() if value is not None else None


def history_entry_out(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "action": ActionOut.from_action(entry.action).model_dump(mode="json"),
        "is_revoked": entry.is_revoked,
        "revoked_at": entry.revoked_at.isoformat() if entry.revoked_at else None,
        "revoked_by": entry.revoked_by,
        "reversal_reason": entry.reversal_reason,
        "time_between_action_and_reversal_seconds": _seconds(entry.time_between_action_and_reversal),
        "state_changes": _state_changes(entry.state_changes),
        "was_reapplied": entry.was_reapplied,
    }


def reversal_entry_out(entry: ReversalHistoryEntry) -> dict[str, Any]:
    return {
        "action": ActionOut.from_action(entry.action).model_dump(mode="json"),
        "revoked_at": entry.revoked_at.isoformat(),
        "revoked_by": entry.revoked_by,
        "reversal_reason": entry.reversal_reason,
        "time_between_action_and_reversal_seconds": _seconds(entry.time_between_action_and_reversal),
        "is_self_reversal": entry.is_self_reversal,
        "moderator_username": entry.moderator_username,
        "revoked_by_username": entry.revoked_by_username,
        "target_username": entry.target_username,
        "state_changes": _state_changes(entry.state_changes),
        "was_reapplied": entry.was_reapplied,
    }
