"""Reversal engine: revoking actions and undoing their dependent state.

A reversal stamps ``revoked_at``/``revoked_by`` on the action, records the
reason and a state change in its metadata and then clears whatever the action
left behind (profile suspension fields, restriction rows). Reversed actions are
immutable; the repository rejects every later write.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from app.moderation.domain.authorization import (
    ActorContext,
    ensure_reversal_allowed,
    require_admin,
    require_moderator,
)
from app.moderation.domain.errors import (
    ModerationError,
    ModerationValidationError,
    NotFoundError,
    UnauthorizedError,
    wrap_unexpected,
)
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_UNTIL,
    ModerationAction,
    ModerationActionType,
    ReversalDetails,
    ReversalType,
    RestrictionType,
    SecurityEventType,
    StateChange,
    StateChangeKind,
    UserRestriction,
    UserRole,
)
from app.moderation.domain.notifications import (
    NotificationContent,
    NotificationDispatcher,
    OriginalActionSummary,
    ReversalNotificationParams,
    generate_reversal_notification,
    generate_revocation_notification,
)
from app.moderation.domain.repositories import (
    ActionQuery,
    ActionRepository,
    ProfileRepository,
    RestrictionRepository,
    SecurityEventRepository,
    UnitOfWork,
)
from app.moderation.domain.security import SecurityEventRecorder, StaffAlerter
from app.moderation.domain.validation import (
    REASON_MAX_LENGTH,
    is_valid_uuid,
    require_uuid,
    sanitize_text,
    validate_text_length,
)
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

REVERSER_REQUIRED = "Only moderators and admins can reverse moderation actions"
SUSPENSION_ACTIONS = (ModerationActionType.USER_SUSPENDED, ModerationActionType.USER_BANNED)
TAMPERING_EVENTS = (
    SecurityEventType.REVERSAL_MODIFICATION_ATTEMPT.value,
    SecurityEventType.REVERSAL_MODIFICATION_PREVENTED.value,
    SecurityEventType.REVERSAL_MODIFICATION_SUCCEEDED.value,
    SecurityEventType.REVERSAL_IMMUTABILITY_VIOLATION.value,
)
SEVERITY_ORDER = ("low", "medium", "high", "critical")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_reason(reason: str | None, message: str) -> str:
    if not (reason or "").strip():
        raise ModerationValidationError(message)
    validate_text_length(reason, REASON_MAX_LENGTH, "Reason")
    return sanitize_text(reason)


@dataclass(slots=True, frozen=True)
class ImmutabilityReport:
    is_immutable: bool
    violations: tuple[str, ...]
    action: ModerationAction


@dataclass(slots=True, frozen=True)
class ModificationAttempt:
    prevented: bool
    error: Optional[str]
    security_event_logged: bool


@dataclass(slots=True, frozen=True)
class SuspiciousPattern:
    type: str
    severity: str
    description: str
    count: int
    user_ids: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class SuspiciousActivityReport:
    suspicious_activity_detected: bool
    patterns: tuple[SuspiciousPattern, ...] = ()


@dataclass
class ReversalService:
    actions: ActionRepository
    restrictions: RestrictionRepository
    profiles: ProfileRepository
    security: SecurityEventRecorder
    security_events: SecurityEventRepository
    uow: UnitOfWork
    notifier: NotificationDispatcher | None = None
    alerter: StaffAlerter | None = None
    clock: Callable[[], datetime] = _now

    # --- shared helpers ----------------------------------------------------

    async def _load_action(self, action_id: str) -> ModerationAction:
        action = await self.actions.get(action_id)
        if action is None:
            raise NotFoundError("Moderation action not found", details={"action_id": action_id})
        return action

    async def _authorize_target(self, actor: ActorContext, target_user_id: str) -> UserRole:
        target_role = await self.profiles.get_role(target_user_id)
        ensure_reversal_allowed(actor, target_role, target_user_id=target_user_id)
        return target_role

    async def _revoke(
        self,
        action: ModerationAction,
        actor: ActorContext,
        reason: str,
        *,
        now: datetime,
        restriction: UserRestriction | None = None,
    ) -> ModerationAction:
        is_self = action.moderator_id == actor.user_id
        metadata = action.metadata
        if not metadata.state_changes:
            metadata = replace(
                metadata,
                state_changes=(
                    StateChange(
                        timestamp=action.created_at,
                        action=StateChangeKind.APPLIED,
                        by_user_id=action.moderator_id,
                        reason=action.reason,
                    ),
                ),
            )
        metadata = metadata.with_reversal(
            ReversalDetails(
                reversal_reason=reason,
                is_self_reversal=is_self,
                restriction_id=restriction.id if restriction else None,
                restriction_type=restriction.restriction_type.value if restriction else None,
            ),
            StateChange(
                timestamp=now,
                action=StateChangeKind.REVERSED,
                by_user_id=actor.user_id,
                reason=reason,
                is_self_action=is_self,
            ),
        )
        return await self.actions.revoke(replace(action, revoked_at=now, revoked_by=actor.user_id, metadata=metadata))

    async def _after_reversal(self, action: ModerationAction, actor: ActorContext, reason: str, *, flow: str) -> None:
        is_self = action.moderator_id == actor.user_id
        obs_metrics.MOD_REVERSALS_TOTAL.labels(action_type=action.action_type.value).inc()
        if is_self:
            await self.security.record(
                SecurityEventType.SELF_REVERSAL,
                actor.user_id,
                flow=flow,
                action_id=action.id,
                target_user_id=action.target_user_id,
                action_type=action.action_type.value,
                reason=reason,
            )
        logger.info(
            "moderation action reversed",
            extra={"action_id": action.id, "action_type": action.action_type.value, "flow": flow, "self_reversal": is_self},
        )

    async def _restore_profile_suspension(self, user_id: str, *, now: datetime) -> None:
        """Point the profile at the longest suspension still in effect, or clear it."""
        remaining = [
            item
            for item in await self.restrictions.list_for_user(user_id)
            if item.restriction_type is RestrictionType.SUSPENDED and item.is_in_effect(now=now)
        ]
        if not remaining:
            await self.profiles.clear_suspension(user_id)
            return
        longest = max(remaining, key=lambda item: item.expires_at or PERMANENT_SUSPENSION_UNTIL)
        await self.profiles.set_suspension(
            user_id,
            until=longest.expires_at or PERMANENT_SUSPENSION_UNTIL,
            reason=longest.reason,
        )

    async def _ensure_can_lift_ban(self, actor: ActorContext, *, target_user_id: str, action_id: str | None) -> None:
        if actor.is_admin:
            return
        await self.security.record(
            SecurityEventType.UNAUTHORIZED_BAN_REVOKE_ATTEMPT,
            actor.user_id,
            target_user_id=target_user_id,
            action_id=action_id,
        )
        raise UnauthorizedError("Only admins can revoke permanent bans", details={"action_id": action_id})

    async def _latest_suspension_action(self, user_id: str) -> ModerationAction | None:
        rows = await self.actions.list(
            ActionQuery(target_user_id=user_id, action_types=SUSPENSION_ACTIONS, revoked=False)
        )
        return max(rows, key=lambda item: item.created_at, default=None)

    async def _original_summary(self, action: ModerationAction | None) -> OriginalActionSummary | None:
        if action is None:
            return None
        names = await self.profiles.usernames([action.moderator_id])
        return OriginalActionSummary(
            reason=action.reason,
            applied_by=names.get(action.moderator_id, "Unknown"),
            applied_at=action.created_at,
            duration_days=action.duration_days,
        )

    async def _moderator_name(self, actor: ActorContext, default: str = "Moderator") -> str:
        names = await self.profiles.usernames([actor.user_id])
        return names.get(actor.user_id, default)

    async def _deliver(
        self,
        user_id: str,
        content: NotificationContent,
        *,
        kind: str,
        data: Mapping[str, Any],
        related_notification_id: str | None = None,
    ) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(user_id, content, data=data, related_notification_id=related_notification_id)
        except Exception:  # noqa: BLE001
            obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind=kind).inc()
            logger.exception("failed to send reversal notification", extra={"recipient_id": user_id, "kind": kind})

    async def _notify_reversal(
        self,
        user_id: str,
        actor: ActorContext,
        reason: str,
        reversal_type: ReversalType,
        action: ModerationAction | None,
        *,
        restriction_type: RestrictionType | None = None,
        default_name: str = "Moderator",
    ) -> None:
        try:
            params = ReversalNotificationParams(
                reversal_type=reversal_type,
                moderator_name=await self._moderator_name(actor, default_name),
                reason=reason,
                original_action=await self._original_summary(action),
                restriction_type=restriction_type,
            )
        except Exception:  # noqa: BLE001
            obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind=reversal_type.value).inc()
            logger.exception("failed to prepare reversal notification", extra={"recipient_id": user_id})
            return
        await self._deliver(
            user_id,
            generate_reversal_notification(params),
            kind=reversal_type.value,
            data={
                "moderation_action": reversal_type.value,
                "action_id": action.id if action else None,
                "reason": reason,
                "revoked_by": actor.user_id,
            },
            related_notification_id=action.notification_id if action else None,
        )

    # --- reversal flows ----------------------------------------------------

    @wrap_unexpected("revoking action")
    async def revoke_action(self, actor: ActorContext, action_id: str, reason: str) -> ModerationAction:
        require_uuid(action_id, message="Invalid action ID format", field_name="action_id")
        reason = _require_reason(reason, "Reason is required for revoking action")
        require_moderator(actor, REVERSER_REQUIRED)

        action = await self._load_action(action_id)
        if action.is_revoked:
            raise ModerationValidationError(
                "This action has already been revoked",
                details={
                    "action_id": action.id,
                    "revoked_at": action.revoked_at.isoformat() if action.revoked_at else None,
                    "revoked_by": action.revoked_by,
                },
            )
        if action.action_type is ModerationActionType.USER_BANNED:
            await self._ensure_can_lift_ban(actor, target_user_id=action.target_user_id, action_id=action.id)
        await self._authorize_target(actor, action.target_user_id)

        now = self.clock()
        async with self.uow.transaction():
            revoked = await self._revoke(action, actor, reason, now=now)
            if action.action_type in SUSPENSION_ACTIONS:
                # other suspensions and bans on the same user stay in force
                await self.restrictions.deactivate_for_action(action.id, at=now)
                await self._restore_profile_suspension(action.target_user_id, now=now)
            elif action.action_type is ModerationActionType.RESTRICTION_APPLIED:
                await self.restrictions.deactivate_for_action(action.id, at=now)
        if action.action_type is ModerationActionType.CONTENT_REMOVED:
            logger.warning("revoking content removal; content cannot be restored", extra={"action_id": action.id})

        await self._after_reversal(action, actor, reason, flow="revoke_action")
        await self._deliver(
            action.target_user_id,
            generate_revocation_notification(action, reason),
            kind="revocation",
            data={
                "moderation_action": "action_revoked",
                "original_action_type": action.action_type.value,
                "action_id": action.id,
                "reason": reason,
                "revoked_by": actor.user_id,
                "original_reason": action.reason,
            },
        )
        return revoked

    @wrap_unexpected("removing restriction")
    async def remove_user_restriction(self, actor: ActorContext, restriction_id: str, reason: str) -> UserRestriction:
        require_uuid(restriction_id, message="Invalid restriction ID format", field_name="restriction_id")
        reason = _require_reason(reason, "Reason is required for removing restriction")
        require_moderator(actor, REVERSER_REQUIRED)

        restriction = await self.restrictions.get(restriction_id)
        if restriction is None:
            raise NotFoundError("Restriction not found", details={"restriction_id": restriction_id})
        if not restriction.is_active:
            raise ModerationValidationError("Restriction is already inactive", details={"restriction_id": restriction_id})
        if restriction.user_id == actor.user_id:
            await self.security.record(
                "unauthorized_self_restriction_modification",
                actor.user_id,
                restriction_id=restriction_id,
                action="remove",
            )
            raise UnauthorizedError(
                "Users cannot modify their own restrictions",
                details={"restriction_id": restriction_id},
            )
        await self._authorize_target(actor, restriction.user_id)

        related = await self.actions.get(restriction.related_action_id) if restriction.related_action_id else None
        if restriction.restriction_type is RestrictionType.SUSPENDED:
            if related is not None:
                is_ban = related.action_type is ModerationActionType.USER_BANNED
            else:
                is_ban = restriction.expires_at is None
            if is_ban:
                await self._ensure_can_lift_ban(
                    actor, target_user_id=restriction.user_id, action_id=related.id if related else None
                )

        now = self.clock()
        reversed_action = None
        async with self.uow.transaction():
            if related is not None and not related.is_revoked:
                reversed_action = await self._revoke(related, actor, reason, now=now, restriction=restriction)
            await self.restrictions.deactivate(restriction.id, at=now)
            if restriction.restriction_type is RestrictionType.SUSPENDED:
                await self._restore_profile_suspension(restriction.user_id, now=now)
        if reversed_action is not None:
            related = reversed_action
            await self._after_reversal(related, actor, reason, flow="remove_user_restriction")
        await self._notify_reversal(
            restriction.user_id,
            actor,
            reason,
            ReversalType.RESTRICTION_REMOVED,
            related,
            restriction_type=restriction.restriction_type,
        )
        return replace(restriction, is_active=False, updated_at=now)

    @wrap_unexpected("lifting suspension")
    async def lift_suspension(self, actor: ActorContext, user_id: str, reason: str) -> Optional[ModerationAction]:
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        reason = _require_reason(reason, "Reason is required for lifting suspension")
        require_moderator(actor, REVERSER_REQUIRED)
        await self._authorize_target(actor, user_id)

        profile = await self.profiles.get_profile(user_id)
        now = self.clock()
        if profile is None or not profile.is_suspended(now=now):
            raise ModerationValidationError("User is not currently suspended", details={"user_id": user_id})
        if profile.is_permanently_suspended:
            require_admin(actor)

        return await self._clear_suspension(actor, user_id, reason, ReversalType.SUSPENSION_LIFTED, flow="lift_suspension")

    @wrap_unexpected("removing ban")
    async def remove_ban(self, actor: ActorContext, user_id: str, reason: str) -> Optional[ModerationAction]:
        require_uuid(user_id, message="Invalid user ID format", field_name="user_id")
        reason = _require_reason(reason, "Reason is required for removing permanent suspension")
        require_admin(actor)
        await self._authorize_target(actor, user_id)

        profile = await self.profiles.get_profile(user_id)
        if profile is None or profile.suspended_until is None:
            raise ModerationValidationError(
                "User is not currently permanently suspended",
                details={"user_id": user_id},
            )
        if not profile.is_permanently_suspended:
            raise ModerationValidationError(
                "User has a temporary suspension, not a permanent suspension. Use liftSuspension instead.",
                details={"user_id": user_id, "suspended_until": profile.suspended_until.isoformat()},
            )
        return await self._clear_suspension(
            actor, user_id, reason, ReversalType.BAN_REMOVED, flow="remove_ban", default_name="Administrator"
        )

    async def _clear_suspension(
        self,
        actor: ActorContext,
        user_id: str,
        reason: str,
        reversal_type: ReversalType,
        *,
        flow: str,
        default_name: str = "Moderator",
    ) -> Optional[ModerationAction]:
        now = self.clock()
        async with self.uow.transaction():
            action = await self._latest_suspension_action(user_id)
            revoked = await self._revoke(action, actor, reason, now=now) if action else None
            await self.restrictions.deactivate_type(user_id, RestrictionType.SUSPENDED, at=now)
            await self.profiles.clear_suspension(user_id)
        if revoked is not None:
            await self._after_reversal(revoked, actor, reason, flow=flow)
        await self._notify_reversal(user_id, actor, reason, reversal_type, revoked, default_name=default_name)
        return revoked

    # --- immutability auditing ---------------------------------------------

    @wrap_unexpected("verifying reversal immutability")
    async def verify_reversal_immutability(self, action_id: str) -> ImmutabilityReport:
        require_uuid(action_id, message="Invalid action ID format", field_name="action_id")
        action = await self._load_action(action_id)
        if action.revoked_at is None and action.revoked_by is None:
            return ImmutabilityReport(is_immutable=True, violations=(), action=action)

        violations: list[str] = []
        if action.revoked_at is not None and not isinstance(action.revoked_at, datetime):
            violations.append("revoked_at contains invalid timestamp")
        if not action.revoked_by:
            violations.append("revoked_by field is missing on reversed action")
        elif not is_valid_uuid(action.revoked_by):
            violations.append("revoked_by contains invalid UUID")
        if action.metadata.reversal is None:
            violations.append("reversal_reason is missing from metadata")
        elif not action.metadata.reversal.reversal_reason.strip():
            violations.append("reversal_reason in metadata is empty")
        if (action.revoked_at is None) != (action.revoked_by is None):
            violations.append("Inconsistency: revoked_at and revoked_by must both be set or both be null")
        if isinstance(action.revoked_at, datetime):
            if action.revoked_at > self.clock():
                violations.append("revoked_at timestamp is in the future")
            if action.revoked_at < action.created_at:
                violations.append("revoked_at timestamp is before action creation timestamp")

        if violations:
            await self.security.record(
                SecurityEventType.REVERSAL_IMMUTABILITY_VIOLATION,
                action.revoked_by or "unknown",
                action_id=action.id,
                violations=violations,
                action_type=action.action_type.value,
                target_user_id=action.target_user_id,
            )
        return ImmutabilityReport(is_immutable=not violations, violations=tuple(violations), action=action)

    @wrap_unexpected("attempting reversal modification")
    async def attempt_reversal_modification(
        self, actor: ActorContext, action_id: str, modifications: Mapping[str, Any]
    ) -> ModificationAttempt:
        """Try to rewrite reversal fields and report whether the store refused."""

        require_uuid(action_id, message="Invalid action ID format", field_name="action_id")
        action = await self._load_action(action_id)
        if not action.is_revoked:
            return ModificationAttempt(
                prevented=False,
                error="Action is not reversed, cannot test reversal modification",
                security_event_logged=False,
            )

        attempted = {key: modifications[key] for key in ("revoked_at", "revoked_by", "reversal_reason") if key in modifications}
        await self.security.record(
            SecurityEventType.REVERSAL_MODIFICATION_ATTEMPT,
            actor.user_id,
            action_id=action.id,
            attempted_modifications=attempted,
            original_values={
                "revoked_at": action.revoked_at.isoformat() if action.revoked_at else None,
                "revoked_by": action.revoked_by,
                "reversal_reason": action.reversal_reason,
            },
        )

        tampered = action
        if "revoked_at" in attempted:
            tampered = replace(tampered, revoked_at=attempted["revoked_at"])
        if "revoked_by" in attempted:
            tampered = replace(tampered, revoked_by=attempted["revoked_by"])
        if "reversal_reason" in attempted and action.metadata.reversal is not None:
            tampered = replace(
                tampered,
                metadata=replace(
                    action.metadata,
                    reversal=replace(action.metadata.reversal, reversal_reason=str(attempted["reversal_reason"])),
                ),
            )
        try:
            await self.actions.update(tampered)
        except ModerationError as exc:
            await self.security.record(
                SecurityEventType.REVERSAL_MODIFICATION_PREVENTED,
                actor.user_id,
                action_id=action.id,
                attempted_modifications=attempted,
                error_code=exc.code.value,
                error_message=exc.message,
            )
            return ModificationAttempt(prevented=True, error=exc.message, security_event_logged=True)

        await self.security.record(
            SecurityEventType.REVERSAL_MODIFICATION_SUCCEEDED,
            actor.user_id,
            action_id=action.id,
            attempted_modifications=attempted,
            severity="critical",
        )
        await self._alert_admins(
            "reversal_immutability_breach",
            "critical",
            {
                "message": "Reversal record was successfully modified despite immutability constraints",
                "action_id": action.id,
                "user_id": actor.user_id,
            },
        )
        return ModificationAttempt(
            prevented=False,
            error="CRITICAL: Modification was not prevented by database constraints",
            security_event_logged=True,
        )

    async def detect_suspicious_reversal_activity(
        self, user_id: str | None = None, window_hours: int = 24
    ) -> SuspiciousActivityReport:
        since = self.clock() - timedelta(hours=window_hours)
        try:
            events = await self.security_events.list_events(TAMPERING_EVENTS, since=since, user_id=user_id)
        except Exception:  # noqa: BLE001
            logger.exception("failed to load security events for reversal audit")
            return SuspiciousActivityReport(suspicious_activity_detected=False)
        if not events:
            return SuspiciousActivityReport(suspicious_activity_detected=False)

        patterns: list[SuspiciousPattern] = []
        per_user = Counter(event.user_id for event in events if event.user_id)
        for uid, count in per_user.items():
            if count >= 5:
                patterns.append(
                    SuspiciousPattern(
                        type="multiple_attempts_same_user",
                        severity="high" if count >= 10 else "medium",
                        description=f"User {uid} attempted to modify reversal records {count} times in {window_hours} hours",
                        count=count,
                        user_ids=(uid,),
                    )
                )

        succeeded = [e for e in events if e.event_type == SecurityEventType.REVERSAL_MODIFICATION_SUCCEEDED.value]
        if succeeded:
            patterns.append(
                SuspiciousPattern(
                    type="immutability_breach",
                    severity="critical",
                    description=(
                        f"{len(succeeded)} reversal record(s) were successfully modified "
                        "despite immutability constraints"
                    ),
                    count=len(succeeded),
                    user_ids=tuple(e.user_id for e in succeeded if e.user_id),
                )
            )

        ordered = sorted(events, key=lambda event: event.created_at)
        rapid = sum(
            1
            for previous, current in zip(ordered, ordered[1:])
            if (current.created_at - previous.created_at).total_seconds() < 1
        )
        if rapid >= 3:
            patterns.append(
                SuspiciousPattern(
                    type="rapid_fire_attempts",
                    severity="high",
                    description=(
                        f"{rapid} modification attempts occurred within 1 second of each other, "
                        "suggesting automated attack"
                    ),
                    count=rapid,
                    user_ids=tuple(dict.fromkeys(e.user_id for e in events if e.user_id)),
                )
            )

        violations = [e for e in events if e.event_type == SecurityEventType.REVERSAL_IMMUTABILITY_VIOLATION.value]
        if violations:
            patterns.append(
                SuspiciousPattern(
                    type="immutability_violations",
                    severity="high",
                    description=f"{len(violations)} reversal record(s) have immutability violations",
                    count=len(violations),
                    user_ids=tuple(e.user_id for e in violations if e.user_id),
                )
            )

        if patterns:
            worst = max((p.severity for p in patterns), key=SEVERITY_ORDER.index)
            await self._alert_admins(
                "suspicious_reversal_activity_detected",
                "medium" if worst == "low" else worst,
                {
                    "time_window_hours": window_hours,
                    "patterns_detected": len(patterns),
                    "patterns": [p.type for p in patterns],
                    "total_events": len(events),
                },
            )
        return SuspiciousActivityReport(suspicious_activity_detected=bool(patterns), patterns=tuple(patterns))

    async def _alert_admins(self, event_type: str, severity: str, details: Mapping[str, Any]) -> None:
        if self.alerter is None:
            return
        content = NotificationContent(
            title=f"🚨 Security Alert: {event_type}",
            message=(
                "Suspicious activity detected related to moderation reversal records.\n\n"
                f"Severity: {severity.upper()}\n\n"
                f"Details: {json.dumps(dict(details), indent=2, default=str)}\n\n"
                "Please investigate immediately."
            ),
            priority=3,
            type="security_alert",
        )
        sent = await self.alerter.alert(
            content,
            data={
                "event_type": event_type,
                "severity": severity,
                "details": dict(details),
                "requires_immediate_action": severity == "critical",
            },
            roles=(UserRole.ADMIN,),
            kind="security_alert",
        )
        await self.security.record(
            SecurityEventType.ADMIN_ALERT_SENT,
            "system",
            event_type=event_type,
            severity=severity,
            admin_count=sent,
        )
