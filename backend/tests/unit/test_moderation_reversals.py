from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

import pytest

from app.moderation.domain.actions_service import ModerationActionParams
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.errors import (
    ImmutableActionError,
    ModerationDatabaseError,
    ModerationValidationError,
    NotFoundError,
    UnauthorizedError,
)
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_UNTIL,
    ModerationAction,
    ModerationActionType,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    SecurityEventType,
    StateChangeKind,
    UserRole,
)
from app.moderation.domain.repositories import (
    InMemoryActionRepository,
    InMemoryRestrictionRepository,
    InMemoryUnitOfWork,
)


def _moderator(ids) -> ActorContext:
    return ActorContext(ids.moderator, UserRole.MODERATOR)


def _other_moderator(ids) -> ActorContext:
    return ActorContext(ids.other_moderator, UserRole.MODERATOR)


def _admin(ids) -> ActorContext:
    return ActorContext(ids.admin, UserRole.ADMIN)


async def _act(world, actor: ActorContext, target_id: str, action_type: str, **extra) -> ModerationAction:
    report = await world.report_store.create(
        Report(
            id=str(uuid4()),
            reporter_id=str(uuid4()),
            report_type=ReportType.USER,
            target_id=target_id,
            reported_user_id=target_id,
            reason=ReportReason.HARASSMENT,
            status=ReportStatus.PENDING,
            priority=2,
            created_at=world.now - timedelta(hours=2),
        )
    )
    result = await world.actions.take_moderation_action(
        actor,
        ModerationActionParams(
            report_id=report.id,
            action_type=action_type,
            target_user_id=target_id,
            reason="Original reason",
            **extra,
        ),
    )
    return result.action


@pytest.mark.asyncio
async def test_revoking_suspension_clears_dependent_state(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=7)

    revoked = await world.reversals.revoke_action(_other_moderator(ids), action.id, "Evidence was misread")

    assert revoked.revoked_at == world.now
    assert revoked.revoked_by == ids.other_moderator
    assert revoked.reversal_reason == "Evidence was misread"
    assert revoked.metadata.reversal.is_self_reversal is False
    assert [change.action for change in revoked.metadata.state_changes] == [
        StateChangeKind.APPLIED,
        StateChangeKind.REVERSED,
    ]
    profile = await world.profiles.get_profile(ids.target)
    assert profile.suspended_until is None
    assert profile.suspension_reason is None
    assert [item.is_active for item in await world.restrictions.list_for_user(ids.target)] == [False]
    assert world.notifications.items[-1].title == "Suspension Lifted"
    assert "self_reversal" not in {event.event_type for event in world.security_events.events}


@pytest.mark.asyncio
async def test_self_reversal_is_logged(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_warned")

    revoked = await world.reversals.revoke_action(_moderator(ids), action.id, "Issued by mistake")

    assert revoked.metadata.reversal.is_self_reversal is True
    assert revoked.metadata.state_changes[-1].is_self_action is True
    event = world.security_events.events[-1]
    assert event.event_type == SecurityEventType.SELF_REVERSAL.value
    assert event.details["action_id"] == action.id
    assert event.details["flow"] == "revoke_action"


@pytest.mark.asyncio
async def test_revoked_actions_are_immutable(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_warned")
    revoked = await world.reversals.revoke_action(_other_moderator(ids), action.id, "Overturned on review")

    with pytest.raises(ModerationValidationError) as excinfo:
        await world.reversals.revoke_action(_admin(ids), action.id, "again")
    assert excinfo.value.message == "This action has already been revoked"
    assert excinfo.value.details["revoked_by"] == ids.other_moderator

    with pytest.raises(ImmutableActionError):
        await world.action_store.update(revoked)
    with pytest.raises(ImmutableActionError):
        await world.action_store.revoke(revoked)


@pytest.mark.asyncio
async def test_revoke_requires_reason_and_existing_action(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_warned")
    with pytest.raises(ModerationValidationError, match="Reason is required for revoking action"):
        await world.reversals.revoke_action(_moderator(ids), action.id, "   ")
    with pytest.raises(NotFoundError):
        await world.reversals.revoke_action(_moderator(ids), str(uuid4()), "reason")
    with pytest.raises(UnauthorizedError):
        await world.reversals.revoke_action(ActorContext(ids.reporter), action.id, "reason")


@pytest.mark.asyncio
async def test_only_admins_revoke_bans(world, ids):
    ban = await _act(world, _admin(ids), ids.target, "user_banned")

    with pytest.raises(UnauthorizedError, match="Only admins can revoke permanent bans"):
        await world.reversals.revoke_action(_moderator(ids), ban.id, "Appeal accepted")

    revoked = await world.reversals.revoke_action(_admin(ids), ban.id, "Appeal accepted")
    assert revoked.is_revoked
    assert (await world.profiles.get_profile(ids.target)).suspended_until is None


@pytest.mark.asyncio
async def test_only_admins_remove_ban_restrictions(world, ids):
    ban = await _act(world, _admin(ids), ids.target, "user_banned")
    [restriction] = await world.restrictions.list_for_user(ids.target)

    with pytest.raises(UnauthorizedError, match="Only admins can revoke permanent bans"):
        await world.reversals.remove_user_restriction(_moderator(ids), restriction.id, "Appeal accepted")

    assert (await world.restrictions.get(restriction.id)).is_active is True
    assert not (await world.action_store.get(ban.id)).is_revoked
    assert (await world.profiles.get_profile(ids.target)).suspended_until == PERMANENT_SUSPENSION_UNTIL
    event = world.security_events.events[-1]
    assert event.event_type == SecurityEventType.UNAUTHORIZED_BAN_REVOKE_ATTEMPT.value
    assert event.details["action_id"] == ban.id

    await world.reversals.remove_user_restriction(_admin(ids), restriction.id, "Appeal accepted")
    assert (await world.action_store.get(ban.id)).is_revoked
    assert (await world.profiles.get_profile(ids.target)).suspended_until is None


@pytest.mark.asyncio
async def test_revoking_suspension_keeps_later_ban(world, ids):
    suspension = await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=7)
    ban = await _act(world, _admin(ids), ids.target, "user_banned")

    await world.reversals.revoke_action(_moderator(ids), suspension.id, "Superseded by ban")

    by_action = {item.related_action_id: item for item in await world.restrictions.list_for_user(ids.target)}
    assert by_action[suspension.id].is_active is False
    assert by_action[ban.id].is_active is True
    assert not (await world.action_store.get(ban.id)).is_revoked
    profile = await world.profiles.get_profile(ids.target)
    assert profile.suspended_until == PERMANENT_SUSPENSION_UNTIL
    assert profile.is_suspended(now=world.now)


@pytest.mark.asyncio
async def test_revoking_ban_falls_back_to_remaining_suspension(world, ids):
    await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=7)
    ban = await _act(world, _admin(ids), ids.target, "user_banned")

    await world.reversals.revoke_action(_admin(ids), ban.id, "Appeal accepted")

    profile = await world.profiles.get_profile(ids.target)
    assert profile.suspended_until == world.now + timedelta(days=7)


class _RevokeFailsActionRepository(InMemoryActionRepository):
    async def revoke(self, action):
        raise RuntimeError("connection reset")


class _DeactivateFailsRestrictionRepository(InMemoryRestrictionRepository):
    async def deactivate_for_action(self, action_id, *, at):
        raise RuntimeError("connection reset")


@pytest.mark.asyncio
async def test_failed_revoke_leaves_suspension_in_place(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=7)
    failing = _RevokeFailsActionRepository()
    failing.items = world.action_store.items
    service = replace(
        world.reversals,
        actions=failing,
        uow=InMemoryUnitOfWork(failing, world.restrictions, world.profiles),
    )

    with pytest.raises(ModerationDatabaseError):
        await service.revoke_action(_other_moderator(ids), action.id, "Evidence was misread")

    assert [item.is_active for item in await world.restrictions.list_for_user(ids.target)] == [True]
    assert (await world.profiles.get_profile(ids.target)).suspended_until == world.now + timedelta(days=7)
    assert world.notifications.items[-1].title != "Suspension Lifted"


@pytest.mark.asyncio
async def test_failed_restriction_cleanup_rolls_back_revoke(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=7)
    failing = _DeactivateFailsRestrictionRepository()
    failing.items = world.restrictions.items
    service = replace(
        world.reversals,
        restrictions=failing,
        uow=InMemoryUnitOfWork(world.action_store, failing, world.profiles),
    )

    with pytest.raises(ModerationDatabaseError):
        await service.revoke_action(_other_moderator(ids), action.id, "Evidence was misread")

    assert not (await world.action_store.get(action.id)).is_revoked
    assert (await world.profiles.get_profile(ids.target)).suspended_until == world.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_moderators_cannot_reverse_actions_on_admins(world, ids):
    action = await world.action_store.create(
        ModerationAction(
            id=str(uuid4()),
            moderator_id=ids.other_moderator,
            target_user_id=ids.admin,
            action_type=ModerationActionType.USER_WARNED,
            reason="Legacy warning",
            created_at=world.now - timedelta(days=1),
        )
    )
    with pytest.raises(UnauthorizedError, match="Moderators cannot reverse actions on admin accounts"):
        await world.reversals.revoke_action(_moderator(ids), action.id, "Cleanup")


@pytest.mark.asyncio
async def test_removing_restriction_revokes_linked_action(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "restriction_applied", restriction_type="upload_disabled")
    [restriction] = await world.restrictions.list_for_user(ids.target)

    removed = await world.reversals.remove_user_restriction(_other_moderator(ids), restriction.id, "Rights cleared")

    assert removed.is_active is False
    assert (await world.restrictions.get(restriction.id)).is_active is False
    linked = await world.action_store.get(action.id)
    assert linked.is_revoked
    assert linked.metadata.reversal.restriction_id == restriction.id
    assert linked.metadata.reversal.restriction_type == "upload_disabled"
    notification = world.notifications.items[-1]
    assert notification.title == "Restriction Removed"
    assert "Removed by: mod_two" in notification.message
    assert notification.related_notification_id == action.notification_id

    with pytest.raises(ModerationValidationError, match="Restriction is already inactive"):
        await world.reversals.remove_user_restriction(_other_moderator(ids), restriction.id, "Again")


@pytest.mark.asyncio
async def test_users_cannot_lift_their_own_restrictions(world, ids):
    restriction = await world.actions.apply_restriction(
        _admin(ids), ids.moderator, "posting_disabled", "Off-topic posts", send_notification=False
    )
    with pytest.raises(UnauthorizedError, match="Users cannot modify their own restrictions"):
        await world.reversals.remove_user_restriction(_moderator(ids), restriction.id, "Mine")
    assert world.security_events.events[-1].event_type == "unauthorized_self_restriction_modification"


@pytest.mark.asyncio
async def test_lift_suspension(world, ids):
    with pytest.raises(ModerationValidationError, match="User is not currently suspended"):
        await world.reversals.lift_suspension(_moderator(ids), ids.target, "Nothing to lift")

    action = await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=3)
    revoked = await world.reversals.lift_suspension(_other_moderator(ids), ids.target, "Served enough")

    assert revoked.id == action.id
    assert revoked.revoked_by == ids.other_moderator
    assert (await world.profiles.get_profile(ids.target)).suspended_until is None
    notification = world.notifications.items[-1]
    assert notification.title == "Suspension Lifted"
    assert "Original Suspension Details" in notification.message
    assert "• Applied by: mod_one" in notification.message


@pytest.mark.asyncio
async def test_remove_ban(world, ids):
    await _act(world, _moderator(ids), ids.target, "user_suspended", duration_days=3)
    with pytest.raises(UnauthorizedError, match="Only admins can perform this action"):
        await world.reversals.remove_ban(_moderator(ids), ids.target, "Appeal")
    with pytest.raises(ModerationValidationError, match="Use liftSuspension instead"):
        await world.reversals.remove_ban(_admin(ids), ids.target, "Appeal")


@pytest.mark.asyncio
async def test_remove_ban_restores_banned_account(world, ids):
    ban = await _act(world, _admin(ids), ids.target, "user_banned")

    revoked = await world.reversals.remove_ban(_admin(ids), ids.target, "Appeal accepted")

    assert revoked.id == ban.id
    assert (await world.profiles.get_profile(ids.target)).suspended_until is None
    assert world.notifications.items[-1].title == "Ban Removed"
    # self reversal by the admin who banned
    assert world.security_events.events[-1].event_type == "self_reversal"


@pytest.mark.asyncio
async def test_verify_immutability_of_clean_and_broken_reversals(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_warned")
    await world.reversals.revoke_action(_other_moderator(ids), action.id, "Overturned")

    clean = await world.reversals.verify_reversal_immutability(action.id)
    assert clean.is_immutable is True
    assert clean.violations == ()

    broken = await world.action_store.create(
        ModerationAction(
            id=str(uuid4()),
            moderator_id=ids.moderator,
            target_user_id=ids.target,
            action_type=ModerationActionType.USER_WARNED,
            reason="warn",
            created_at=world.now,
            revoked_at=world.now - timedelta(hours=1),
        )
    )
    report = await world.reversals.verify_reversal_immutability(broken.id)
    assert report.is_immutable is False
    assert "revoked_by field is missing on reversed action" in report.violations
    assert "reversal_reason is missing from metadata" in report.violations
    assert "revoked_at timestamp is before action creation timestamp" in report.violations
    assert world.security_events.events[-1].event_type == SecurityEventType.REVERSAL_IMMUTABILITY_VIOLATION.value


@pytest.mark.asyncio
async def test_modification_attempts_are_prevented_and_logged(world, ids):
    action = await _act(world, _moderator(ids), ids.target, "user_warned")

    untouched = await world.reversals.attempt_reversal_modification(_admin(ids), action.id, {"revoked_by": ids.admin})
    assert untouched.prevented is False
    assert untouched.security_event_logged is False

    await world.reversals.revoke_action(_other_moderator(ids), action.id, "Overturned")
    attempt = await world.reversals.attempt_reversal_modification(
        _admin(ids), action.id, {"reversal_reason": "rewritten", "unrelated": 1}
    )

    assert attempt.prevented is True
    assert attempt.security_event_logged is True
    assert attempt.error == "Reversed moderation actions are immutable"
    assert (await world.action_store.get(action.id)).reversal_reason == "Overturned"
    kinds = [event.event_type for event in world.security_events.events[-2:]]
    assert kinds == ["reversal_modification_attempt", "reversal_modification_prevented"]
    assert world.security_events.events[-2].details["attempted_modifications"] == {"reversal_reason": "rewritten"}


@pytest.mark.asyncio
async def test_suspicious_activity_detection(world, ids):
    assert (await world.reversals.detect_suspicious_reversal_activity()).suspicious_activity_detected is False

    for _ in range(5):
        await world.security.record(SecurityEventType.REVERSAL_MODIFICATION_ATTEMPT, ids.moderator, action_id="x")

    report = await world.reversals.detect_suspicious_reversal_activity()

    assert report.suspicious_activity_detected is True
    by_type = {pattern.type: pattern for pattern in report.patterns}
    assert by_type["multiple_attempts_same_user"].severity == "medium"
    assert by_type["multiple_attempts_same_user"].count == 5
    # all five share the fixed clock, so every gap is under a second
    assert by_type["rapid_fire_attempts"].count == 4
    alerts = [item for item in world.notifications.items if item.type == "security_alert"]
    assert [item.user_id for item in alerts] == [ids.admin]
    assert world.security_events.events[-1].event_type == SecurityEventType.ADMIN_ALERT_SENT.value
    assert world.security_events.events[-1].details["admin_count"] == 1


@pytest.mark.asyncio
async def test_suspicious_activity_is_scoped_to_user(world, ids):
    for _ in range(5):
        await world.security.record(SecurityEventType.REVERSAL_MODIFICATION_ATTEMPT, ids.moderator, action_id="x")
    report = await world.reversals.detect_suspicious_reversal_activity(user_id=ids.other_moderator)
    assert report.suspicious_activity_detected is False
    assert report.patterns == ()
