"""Domain records and enumerations shared by the moderation services."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from app.moderation.domain.errors import ModerationValidationError

# Bans are stored as a suspension that ends far in the future.
PERMANENT_SUSPENSION_UNTIL = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
PERMANENT_SUSPENSION_THRESHOLD = datetime(2100, 1, 1, tzinfo=timezone.utc)

VERIFICATION_NOTES_MAX_LENGTH = 500


class ReportType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    TRACK = "track"
    USER = "user"
    ALBUM = "album"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    COPYRIGHT_VIOLATION = "copyright_violation"
    IMPERSONATION = "impersonation"
    SELF_HARM = "self_harm"
    OTHER = "other"


class ReportStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ModerationActionType(str, Enum):
    CONTENT_REMOVED = "content_removed"
    CONTENT_APPROVED = "content_approved"
    USER_WARNED = "user_warned"
    USER_SUSPENDED = "user_suspended"
    USER_BANNED = "user_banned"
    RESTRICTION_APPLIED = "restriction_applied"


class RestrictionType(str, Enum):
    POSTING_DISABLED = "posting_disabled"
    COMMENTING_DISABLED = "commenting_disabled"
    UPLOAD_DISABLED = "upload_disabled"
    SUSPENDED = "suspended"


class UserRole(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class ReversalType(str, Enum):
    SUSPENSION_LIFTED = "suspension_lifted"
    BAN_REMOVED = "ban_removed"
    RESTRICTION_REMOVED = "restriction_removed"


class StateChangeKind(str, Enum):
    APPLIED = "applied"
    REVERSED = "reversed"
    REAPPLIED = "reapplied"


class SecurityEventType(str, Enum):
    DUPLICATE_REPORT_ATTEMPT = "duplicate_report_attempt"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    ADMIN_REPORT_ATTEMPT = "admin_report_attempt"
    UNAUTHORIZED_ACTION_ON_ADMIN = "unauthorized_action_on_admin"
    UNAUTHORIZED_BAN_REVOKE_ATTEMPT = "unauthorized_ban_revoke_attempt"
    SELF_REVERSAL = "self_reversal"
    REVERSAL_MODIFICATION_ATTEMPT = "reversal_modification_attempt"
    REVERSAL_MODIFICATION_PREVENTED = "reversal_modification_prevented"
    REVERSAL_MODIFICATION_SUCCEEDED = "reversal_modification_succeeded"
    REVERSAL_IMMUTABILITY_VIOLATION = "reversal_immutability_violation_detected"
    ADMIN_ALERT_SENT = "admin_alert_sent"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# --- action metadata -------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AlbumCascade:
    """Parent record of an album removal; ``cascading_action`` is false for selective removal."""

    cascading_action: bool
    affected_tracks: tuple[str, ...] = ()
    track_count: int = 0

    def __post_init__(self) -> None:
        if self.cascading_action and self.track_count != len(self.affected_tracks):
            raise ModerationValidationError(
                "Cascading metadata track_count must match affected_tracks",
                details={"track_count": self.track_count, "affected_tracks": len(self.affected_tracks)},
            )

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"cascading_action": self.cascading_action, "track_count": self.track_count}
        if self.cascading_action:
            payload["affected_tracks"] = list(self.affected_tracks)
        return payload


@dataclass(slots=True, frozen=True)
class CascadedTrack:
    """Child record created for a track removed as part of an album cascade."""

    parent_album_action: str
    parent_album_id: str

    def to_json(self) -> dict[str, Any]:
        return {
            "parent_album_action": self.parent_album_action,
            "parent_album_id": self.parent_album_id,
            "cascaded_from_album": True,
        }


CascadeInfo = Union[AlbumCascade, CascadedTrack]


@dataclass(slots=True, frozen=True)
class EvidenceVerification:
    verified: bool
    notes: Optional[str]
    verified_at: datetime
    verified_by: str

    def __post_init__(self) -> None:
        if self.notes is not None and len(self.notes) > VERIFICATION_NOTES_MAX_LENGTH:
            raise ModerationValidationError(
                "Verification notes must be 500 characters or less",
                details={"length": len(self.notes), "max_length": VERIFICATION_NOTES_MAX_LENGTH},
            )

    def to_json(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "notes": self.notes,
            "verified_at": _isoformat(self.verified_at),
            "verified_by": self.verified_by,
        }


@dataclass(slots=True, frozen=True)
class ReversalDetails:
    reversal_reason: str
    is_self_reversal: bool
    restriction_id: Optional[str] = None
    restriction_type: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.reversal_reason or not self.reversal_reason.strip():
            raise ModerationValidationError("Reversal reason is required")

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reversal_reason": self.reversal_reason,
            "is_self_reversal": self.is_self_reversal,
        }
        if self.restriction_id is not None:
            payload["restriction_id"] = self.restriction_id
        if self.restriction_type is not None:
            payload["restriction_type"] = self.restriction_type
        return payload


@dataclass(slots=True, frozen=True)
class StateChange:
    timestamp: datetime
    action: StateChangeKind
    by_user_id: str
    reason: str
    is_self_action: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "timestamp": _isoformat(self.timestamp),
            "action": self.action.value,
            "by_user_id": self.by_user_id,
            "reason": self.reason,
            "is_self_action": self.is_self_action,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "StateChange":
        return cls(
            timestamp=_parse_datetime(data.get("timestamp")) or datetime.now(timezone.utc),
            action=StateChangeKind(str(data.get("action"))),
            by_user_id=str(data.get("by_user_id") or ""),
            reason=str(data.get("reason") or ""),
            is_self_action=bool(data.get("is_self_action", False)),
        )


_CASCADE_KEYS = ("cascading_action", "affected_tracks", "track_count", "parent_album_action", "parent_album_id", "cascaded_from_album")
_REVERSAL_KEYS = ("reversal_reason", "is_self_reversal", "restriction_id", "restriction_type")


@dataclass(slots=True)
class ActionMetadata:
    """Structured metadata attached to a moderation action.

    The store keeps a flat JSON object; this type splits it into tagged
    sections so callers never reach into raw keys. Unknown keys survive a
    round trip through ``extra``.
    """

    cascade: Optional[CascadeInfo] = None
    verification: Optional[EvidenceVerification] = None
    reversal: Optional[ReversalDetails] = None
    state_changes: tuple[StateChange, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return (
            self.cascade is None
            and self.verification is None
            and self.reversal is None
            and not self.state_changes
            and not self.extra
        )

    @property
    def was_reapplied(self) -> bool:
        return any(change.action is StateChangeKind.REAPPLIED for change in self.state_changes)

    def with_reversal(self, details: ReversalDetails, change: StateChange) -> "ActionMetadata":
        if self.reversal is not None:
            raise ModerationValidationError(
                "Reversal details cannot be changed once recorded",
                details={"reversal_reason": self.reversal.reversal_reason},
            )
        return replace(self, reversal=details, state_changes=self.state_changes + (change,))

    def to_json(self) -> Optional[dict[str, Any]]:
        if self.is_empty:
            return None
        payload: dict[str, Any] = dict(self.extra)
        if self.cascade is not None:
            payload.update(self.cascade.to_json())
        if self.verification is not None:
            payload["evidence_verification"] = self.verification.to_json()
        if self.reversal is not None:
            payload.update(self.reversal.to_json())
        if self.state_changes:
            payload["state_changes"] = [change.to_json() for change in self.state_changes]
        return payload

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> "ActionMetadata":
        if not data:
            return cls()
        cascade: Optional[CascadeInfo] = None
        if "parent_album_action" in data:
            cascade = CascadedTrack(
                parent_album_action=str(data["parent_album_action"]),
                parent_album_id=str(data.get("parent_album_id") or ""),
            )
        elif "cascading_action" in data:
            tracks = tuple(str(item) for item in data.get("affected_tracks") or ())
            cascade = AlbumCascade(
                cascading_action=bool(data["cascading_action"]),
                affected_tracks=tracks,
                track_count=int(data.get("track_count", len(tracks))),
            )
        verification: Optional[EvidenceVerification] = None
        raw_verification = data.get("evidence_verification")
        if isinstance(raw_verification, Mapping):
            verification = EvidenceVerification(
                verified=bool(raw_verification.get("verified", False)),
                notes=raw_verification.get("notes"),
                verified_at=_parse_datetime(raw_verification.get("verified_at")) or datetime.now(timezone.utc),
                verified_by=str(raw_verification.get("verified_by") or ""),
            )
        reversal: Optional[ReversalDetails] = None
        if data.get("reversal_reason"):
            reversal = ReversalDetails(
                reversal_reason=str(data["reversal_reason"]),
                is_self_reversal=bool(data.get("is_self_reversal", False)),
                restriction_id=data.get("restriction_id"),
                restriction_type=data.get("restriction_type"),
            )
        changes = tuple(
            StateChange.from_json(item) for item in data.get("state_changes") or () if isinstance(item, Mapping)
        )
        known = set(_CASCADE_KEYS) | set(_REVERSAL_KEYS) | {"evidence_verification", "state_changes"}
        extra = {key: value for key, value in data.items() if key not in known}
        return cls(cascade=cascade, verification=verification, reversal=reversal, state_changes=changes, extra=extra)


# --- records ---------------------------------------------------------------


@dataclass(slots=True)
class Report:
    id: str
    reporter_id: str
    report_type: ReportType
    target_id: str
    reason: ReportReason
    status: ReportStatus
    priority: int
    created_at: datetime
    reported_user_id: Optional[str] = None
    description: Optional[str] = None
    moderator_flagged: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    action_taken: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class ModerationAction:
    id: str
    moderator_id: str
    target_user_id: str
    action_type: ModerationActionType
    reason: str
    created_at: datetime
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    duration_days: Optional[int] = None
    expires_at: Optional[datetime] = None
    related_report_id: Optional[str] = None
    internal_notes: Optional[str] = None
    notification_sent: bool = False
    notification_id: Optional[str] = None
    metadata: ActionMetadata = field(default_factory=ActionMetadata)
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def reversal_reason(self) -> Optional[str]:
        return self.metadata.reversal.reversal_reason if self.metadata.reversal else None

    def is_expired(self, *, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(slots=True)
class UserRestriction:
    id: str
    user_id: str
    restriction_type: RestrictionType
    reason: str
    applied_by: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool = True
    related_action_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_in_effect(self, *, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass(slots=True)
class UserProfile:
    user_id: str
    username: str
    created_at: datetime
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    avatar_url: Optional[str] = None

    def is_suspended(self, *, now: datetime) -> bool:
        return self.suspended_until is not None and self.suspended_until > now

    @property
    def is_permanently_suspended(self) -> bool:
        return self.suspended_until is not None and self.suspended_until > PERMANENT_SUSPENSION_THRESHOLD


@dataclass(slots=True)
class Album:
    id: str
    user_id: str
    name: str
    created_at: datetime
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    is_public: bool = True


@dataclass(slots=True)
class Track:
    id: str
    user_id: str
    title: str
    created_at: datetime
    duration: Optional[int] = None
    author: Optional[str] = None
    play_count: int = 0
    like_count: int = 0
    is_public: bool = True


@dataclass(slots=True)
class AlbumTrack:
    album_id: str
    track_id: str
    position: int


@dataclass(slots=True)
class SecurityEvent:
    event_type: str
    user_id: str
    details: dict[str, Any]
    created_at: datetime
    id: Optional[str] = None


@dataclass(slots=True)
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    created_at: datetime
    read: bool = False
    data: dict[str, Any] = field(default_factory=dict)
    related_notification_id: Optional[str] = None


@dataclass(slots=True)
class SystemMetric:
    metric_type: str
    metric_value: float
    recorded_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
