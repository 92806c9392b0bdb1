from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from app.moderation.domain.actions_service import CascadeOptions, ModerationActionParams
from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.errors import (
    ModerationDatabaseError,
    ModerationValidationError,
    NotFoundError,
    RateLimitExceededError,
    UnauthorizedError,
)
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_UNTIL,
    Album,
    AlbumCascade,
    CascadedTrack,
    ModerationAction,
    ModerationActionType,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    RestrictionType,
    Track,
    UserRole,
)
from app.moderation.domain.notifications import NotificationDispatcher
from app.moderation.domain.repositories import InMemoryActionRepository, InMemoryUnitOfWork


async def _open_report(world, target_id: str, report_type: ReportType = ReportType.USER) -> Report:
    return await world.report_store.create(
        Report(
            id=str(uuid4()),
            reporter_id=str(uuid4()),
            report_type=report_type,
            target_id=target_id,
            reason=ReportReason.HARASSMENT,
            status=ReportStatus.PENDING,
            priority=2,
            created_at=world.now - timedelta(hours=1),
            reported_user_id=target_id if report_type is ReportType.USER else None,
        )
    )


def _album_with_tracks(world, owner_id: str, count: int = 3) -> Album:
    album = Album(id=str(uuid4()), user_id=owner_id, name="Night Drive", created_at=world.now)
    tracks = [
        Track(id=str(uuid4()), user_id=owner_id, title=f"Track {index}", created_at=world.now, duration=180)
        for index in range(count)
    ]
    world.content.add_album(album, tracks)
    return album


def _moderator(ids) -> ActorContext:
    return ActorContext(ids.moderator, UserRole.MODERATOR)


def _admin(ids) -> ActorContext:
    return ActorContext(ids.admin, UserRole.ADMIN)


@pytest.mark.asyncio
async def test_suspension_sets_profile_restriction_and_resolves_report(world, ids):
    report = await _open_report(world, ids.target)

    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id,
            action_type="user_suspended",
            target_user_id=ids.target,
            reason="Repeated harassment",
            duration_days=7,
            internal_notes="second strike",
        ),
    )

    action = result.action
    assert result.records_created == 1
    assert action.expires_at == world.now + timedelta(days=7)
    profile = await world.profiles.get_profile(ids.target)
    assert profile.suspended_until == world.now + timedelta(days=7)
    assert profile.suspension_reason == "Repeated harassment"

    [restriction] = await world.restrictions.list_for_user(ids.target)
    assert restriction.restriction_type is RestrictionType.SUSPENDED
    assert restriction.related_action_id == action.id
    assert restriction.expires_at == action.expires_at

    stored_report = await world.report_store.get(report.id)
    assert stored_report.status is ReportStatus.RESOLVED
    assert stored_report.reviewed_by == ids.moderator
    assert stored_report.action_taken == "user_suspended"
    assert stored_report.resolution_notes == "second strike"

    [notification] = world.notifications.items
    assert notification.user_id == ids.target
    assert notification.title == "Account Suspended"
    assert notification.type == "moderation"
    assert action.notification_sent is True
    assert action.notification_id == notification.id


@pytest.mark.asyncio
async def test_ban_is_admin_only_and_permanent(world, ids):
    report = await _open_report(world, ids.target)
    params = ModerationActionParams(
        report_id=report.id, action_type="user_banned", target_user_id=ids.target, reason="Ban evasion"
    )

    with pytest.raises(UnauthorizedError, match="Only admins can permanently suspend users"):
        await world.actions.take_moderation_action(_moderator(ids), params)

    result = await world.actions.take_moderation_action(_admin(ids), params)

    assert result.action.expires_at is None
    assert result.action.duration_days is None
    profile = await world.profiles.get_profile(ids.target)
    assert profile.suspended_until == PERMANENT_SUSPENSION_UNTIL
    assert profile.is_permanently_suspended
    [restriction] = await world.restrictions.list_for_user(ids.target)
    assert restriction.restriction_type is RestrictionType.SUSPENDED
    assert restriction.expires_at is None
    assert world.notifications.items[-1].title == "Account Suspended Permanently"

    status = await world.actions.get_user_suspension_status(ids.target)
    assert status.is_suspended and status.is_permanent


@pytest.mark.asyncio
async def test_moderators_cannot_act_on_admins(world, ids):
    report = await _open_report(world, ids.admin)
    with pytest.raises(UnauthorizedError, match="Moderators cannot take actions on admin accounts"):
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id, action_type="user_warned", target_user_id=ids.admin, reason="Rude"
            ),
        )
    assert world.security_events.events[-1].event_type == "unauthorized_action_on_admin"
    assert world.action_store.items == {}


@pytest.mark.asyncio
async def test_missing_report_and_mismatched_target_type(world, ids):
    with pytest.raises(NotFoundError, match="Report not found"):
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=str(uuid4()), action_type="user_warned", target_user_id=ids.target, reason="Rude"
            ),
        )

    report = await _open_report(world, ids.target)
    with pytest.raises(ModerationValidationError, match="Target type does not match report type"):
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id,
                action_type="content_removed",
                target_user_id=ids.target,
                target_type="post",
                reason="Spam",
            ),
        )


@pytest.mark.asyncio
async def test_album_cascade_creates_parent_and_child_records(world, ids):
    album = _album_with_tracks(world, ids.target, count=3)
    track_ids = [link.track_id for link in world.content.album_tracks]
    report = await _open_report(world, album.id, ReportType.ALBUM)

    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id,
            action_type="content_removed",
            target_user_id=ids.target,
            reason="Copyrighted recordings",
            cascade=CascadeOptions(remove_album=True, remove_tracks=True),
        ),
    )

    assert result.records_created == 4
    parent = result.action
    assert parent.target_type == "album"
    assert isinstance(parent.metadata.cascade, AlbumCascade)
    assert parent.metadata.cascade.cascading_action is True
    assert parent.metadata.cascade.track_count == 3
    assert list(parent.metadata.cascade.affected_tracks) == track_ids
    for child in result.cascaded_actions:
        assert child.target_type == "track"
        assert child.metadata.cascade == CascadedTrack(parent_album_action=parent.id, parent_album_id=album.id)
    assert sorted(child.target_id for child in result.cascaded_actions) == sorted(track_ids)

    assert world.content.albums == {}
    assert world.content.tracks == {}
    assert world.content.album_tracks == []
    assert len(world.action_store.items) == 4
    # one notification for the owner, not one per track
    assert len(world.notifications.items) == 1


class _FailingActionRepository(InMemoryActionRepository):
    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def create(self, action):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("connection reset")
        return await super().create(action)


@pytest.mark.asyncio
async def test_failed_cascade_rolls_back_every_write(world, ids):
    album = _album_with_tracks(world, ids.target, count=3)
    track_ids = [link.track_id for link in world.content.album_tracks]
    report = await _open_report(world, album.id, ReportType.ALBUM)
    failing = _FailingActionRepository(fail_on=3)
    service = replace(
        world.actions,
        actions=failing,
        uow=InMemoryUnitOfWork(world.report_store, failing, world.restrictions, world.profiles, world.content),
    )

    with pytest.raises(ModerationDatabaseError):
        await service.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id,
                action_type="content_removed",
                target_user_id=ids.target,
                reason="Copyrighted recordings",
                cascade=CascadeOptions(remove_album=True, remove_tracks=True),
            ),
        )

    assert album.id in world.content.albums
    assert sorted(world.content.tracks) == sorted(track_ids)
    assert len(world.content.album_tracks) == 3
    assert failing.items == {}
    assert (await world.report_store.get(report.id)).status is ReportStatus.PENDING
    assert world.notifications.items == []


@pytest.mark.asyncio
async def test_selective_album_removal_keeps_tracks(world, ids):
    album = _album_with_tracks(world, ids.target, count=2)
    report = await _open_report(world, album.id, ReportType.ALBUM)

    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id,
            action_type="content_removed",
            target_user_id=ids.target,
            reason="Offensive cover art",
            cascade=CascadeOptions(remove_album=True),
        ),
    )

    assert result.records_created == 1
    assert result.action.metadata.cascade == AlbumCascade(cascading_action=False)
    assert result.action.metadata.to_json() == {"cascading_action": False, "track_count": 0}
    assert len(world.content.tracks) == 2
    assert world.content.album_tracks == []
    assert album.id not in world.content.albums


@pytest.mark.asyncio
async def test_album_removal_requires_a_choice(world, ids):
    album = _album_with_tracks(world, ids.target)
    report = await _open_report(world, album.id, ReportType.ALBUM)
    with pytest.raises(ModerationValidationError, match="At least one of removeAlbum or removeTracks"):
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id, action_type="content_removed", target_user_id=ids.target, reason="Spam"
            ),
        )
    assert album.id in world.content.albums


@pytest.mark.asyncio
async def test_approving_content_dismisses_report_without_notification(world, ids):
    report = await _open_report(world, ids.target)
    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id, action_type="content_approved", target_user_id=ids.target, reason="No violation"
        ),
    )
    assert result.action.notification_sent is False
    assert world.notifications.items == []
    assert (await world.report_store.get(report.id)).status is ReportStatus.DISMISSED


@pytest.mark.asyncio
async def test_restriction_action_rejects_duplicate_active_restriction(world, ids):
    first = await _open_report(world, ids.target)
    second = await _open_report(world, ids.target)

    def params(report_id: str) -> ModerationActionParams:
        return ModerationActionParams(
            report_id=report_id,
            action_type="restriction_applied",
            target_user_id=ids.target,
            reason="Spam posting",
            restriction_type="posting_disabled",
        )

    result = await world.actions.take_moderation_action(_moderator(ids), params(first.id))
    [restriction] = await world.restrictions.list_for_user(ids.target)
    assert restriction.related_action_id == result.action.id
    assert restriction.expires_at is None

    with pytest.raises(ModerationValidationError) as excinfo:
        await world.actions.take_moderation_action(_moderator(ids), params(second.id))
    assert excinfo.value.message.startswith("This user already has an active posting disabled restriction (permanent)")
    assert excinfo.value.details["existing_restriction_id"] == restriction.id


@pytest.mark.asyncio
async def test_restriction_action_requires_type(world, ids):
    report = await _open_report(world, ids.target)
    with pytest.raises(ModerationValidationError, match="Restriction type is required for restriction actions"):
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id, action_type="restriction_applied", target_user_id=ids.target, reason="Spam"
            ),
        )


@pytest.mark.asyncio
async def test_moderator_action_rate_limit(world, ids):
    for offset in range(100):
        await world.action_store.create(
            ModerationAction(
                id=str(uuid4()),
                moderator_id=ids.moderator,
                target_user_id=str(uuid4()),
                action_type=ModerationActionType.USER_WARNED,
                reason="warn",
                created_at=world.now - timedelta(seconds=offset),
            )
        )
    report = await _open_report(world, ids.target)

    with pytest.raises(RateLimitExceededError) as excinfo:
        await world.actions.take_moderation_action(
            _moderator(ids),
            ModerationActionParams(
                report_id=report.id, action_type="user_warned", target_user_id=ids.target, reason="Rude"
            ),
        )
    assert excinfo.value.message == (
        "You have exceeded the moderation action limit of 100 actions per hour. Please try again later."
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"report_id": "abc"}, "Invalid report ID format"),
        ({"action_type": "shadow_ban"}, "Invalid action type"),
        ({"reason": "  "}, "Reason is required for moderation actions"),
        ({"reason": "r" * 501}, "Reason must be 500 characters or less"),
        ({"duration_days": 0}, "Duration must be between 1 and 365 days"),
        ({"duration_days": 366}, "Duration must be between 1 and 365 days"),
        ({"duration_days": True}, "Duration must be between 1 and 365 days"),
        ({"verification_notes": "n" * 501}, "Verification notes must be 500 characters or less"),
    ],
)
async def test_action_validation(world, ids, overrides, message):
    params = ModerationActionParams(
        report_id=str(uuid4()), action_type="user_suspended", target_user_id=ids.target, reason="Harassment"
    )
    for key, value in overrides.items():
        setattr(params, key, value)
    with pytest.raises(ModerationValidationError) as excinfo:
        await world.actions.take_moderation_action(_moderator(ids), params)
    assert excinfo.value.message == message


@pytest.mark.asyncio
async def test_evidence_verification_is_recorded(world, ids):
    report = await _open_report(world, ids.target)
    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id,
            action_type="user_warned",
            target_user_id=ids.target,
            reason="Rude",
            evidence_verified=True,
            verification_notes="screenshots match",
        ),
    )
    verification = result.action.metadata.verification
    assert verification.verified is True
    assert verification.notes == "screenshots match"
    assert verification.verified_by == ids.moderator
    assert verification.verified_at == world.now


@pytest.mark.asyncio
async def test_verification_notes_at_limit_are_accepted(world, ids):
    report = await _open_report(world, ids.target)
    result = await world.actions.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id,
            action_type="user_warned",
            target_user_id=ids.target,
            reason="Rude",
            evidence_verified=True,
            verification_notes="n" * 500,
        ),
    )
    assert result.action.metadata.verification.notes == "n" * 500


class _BrokenNotifications:
    async def create(self, notification):
        raise RuntimeError("notification store offline")


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_action(world, ids):
    service = replace(world.actions, notifier=NotificationDispatcher(repository=_BrokenNotifications()))
    report = await _open_report(world, ids.target)

    result = await service.take_moderation_action(
        _moderator(ids),
        ModerationActionParams(
            report_id=report.id, action_type="user_warned", target_user_id=ids.target, reason="Rude"
        ),
    )

    assert result.action.notification_sent is False
    assert (await world.action_store.get(result.action.id)) is not None
    assert (await world.report_store.get(report.id)).status is ReportStatus.RESOLVED


@pytest.mark.asyncio
async def test_permissions_follow_active_restrictions(world, ids):
    await world.actions.apply_restriction(_moderator(ids), ids.target, "commenting_disabled", "Spam comments")

    comment = await world.actions.can_user_perform_action(ids.target, "comment")
    post = await world.actions.can_user_perform_action(ids.target, "post")
    assert comment.allowed is False
    assert comment.reason == "Your account has a commenting disabled restriction"
    assert post.allowed is True

    await world.actions.apply_restriction(_moderator(ids), ids.target, "suspended", "Abuse", duration_days=2)
    upload = await world.actions.can_user_perform_action(ids.target, "upload")
    assert upload.allowed is False
    assert upload.reason == "Your account is suspended"

    with pytest.raises(ModerationValidationError, match="Invalid action"):
        await world.actions.can_user_perform_action(ids.target, "stream")


@pytest.mark.asyncio
async def test_expired_restrictions_are_not_active(world, ids):
    restriction = await world.actions.apply_restriction(
        _moderator(ids), ids.target, "upload_disabled", "Spam uploads", duration_days=1, send_notification=False
    )
    later = replace(world.actions, clock=lambda: world.now + timedelta(days=2))

    assert [item.id for item in await world.actions.get_user_active_restrictions(ids.target)] == [restriction.id]
    assert await later.check_user_restrictions(ids.target) == []
    assert world.notifications.items == []


@pytest.mark.asyncio
async def test_restrictions_on_admins_are_refused_for_moderators(world, ids):
    with pytest.raises(UnauthorizedError, match="Moderators cannot apply restrictions to admin accounts"):
        await world.actions.apply_restriction(_moderator(ids), ids.admin, "posting_disabled", "Spam")


@pytest.mark.asyncio
async def test_suspension_status_counts_remaining_days(world, ids):
    await world.profiles.set_suspension(
        ids.target, until=world.now + timedelta(days=2, hours=3), reason="Cooling off"
    )
    status = await world.actions.get_user_suspension_status(ids.target)
    assert status.is_suspended is True
    assert status.is_permanent is False
    assert status.days_remaining == 3

    await world.profiles.set_suspension(ids.target, until=datetime(2024, 1, 1, tzinfo=timezone.utc), reason="Old")
    lapsed = await world.actions.get_user_suspension_status(ids.target)
    assert lapsed.is_suspended is False
    assert lapsed.days_remaining == 0
