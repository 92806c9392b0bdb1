from __future__ import annotations

import csv
import io
from datetime import timedelta
from uuid import uuid4

import pytest

from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.errors import ModerationValidationError, UnauthorizedError
from app.moderation.domain.history import (
    ACTION_LOG_HEADERS,
    REVERSAL_HISTORY_HEADERS,
    ActionLogFilters,
    ReversalHistoryFilters,
    render_csv,
)
from app.moderation.domain.models import (
    ActionMetadata,
    ModerationAction,
    ModerationActionType,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    ReversalDetails,
    UserRole,
)


async def _action(
    world,
    *,
    moderator_id: str,
    target_user_id: str,
    created_at,
    action_type: ModerationActionType = ModerationActionType.USER_WARNED,
    revoked_at=None,
    revoked_by: str | None = None,
    reversal_reason: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    expires_at=None,
) -> ModerationAction:
    metadata = ActionMetadata()
    if reversal_reason:
        metadata = ActionMetadata(
            reversal=ReversalDetails(reversal_reason=reversal_reason, is_self_reversal=moderator_id == revoked_by)
        )
    return await world.action_store.create(
        ModerationAction(
            id=str(uuid4()),
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action_type=action_type,
            reason="Posting spam, again",
            created_at=created_at,
            target_type=target_type,
            target_id=target_id,
            expires_at=expires_at,
            revoked_at=revoked_at,
            revoked_by=revoked_by,
            metadata=metadata,
        )
    )


def _report(report_type: ReportType, target_id: str, reported_user_id: str | None = None) -> Report:
    return Report(
        id=str(uuid4()),
        reporter_id=str(uuid4()),
        report_type=report_type,
        target_id=target_id,
        reported_user_id=reported_user_id,
        reason=ReportReason.SPAM,
        status=ReportStatus.PENDING,
        priority=3,
        created_at=None,
    )


@pytest.mark.asyncio
async def test_previous_reversals_for_user_report(world, ids):
    now = world.now
    await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=5),
        revoked_at=now - timedelta(days=4),
        revoked_by=ids.admin,
        reversal_reason="Too harsh",
    )
    latest = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=3),
        revoked_at=now - timedelta(days=1),
        revoked_by=ids.other_moderator,
    )
    await _action(world, moderator_id=ids.moderator, target_user_id=ids.target, created_at=now)

    summary = await world.history.check_previous_reversals(_report(ReportType.USER, ids.target, ids.target))

    assert summary.has_previous_reversals is True
    assert summary.reversal_count == 2
    assert summary.most_recent_reversal.reversed_at == latest.revoked_at
    assert summary.most_recent_reversal.moderator_id == ids.other_moderator
    assert summary.most_recent_reversal.reversal_reason == "No reason provided"


@pytest.mark.asyncio
async def test_previous_reversals_for_content_report(world, ids):
    post_id = str(uuid4())
    await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=world.now - timedelta(days=2),
        action_type=ModerationActionType.CONTENT_REMOVED,
        target_type="post",
        target_id=post_id,
        revoked_at=world.now - timedelta(days=1),
        revoked_by=ids.admin,
        reversal_reason="Satire",
    )

    hit = await world.history.check_previous_reversals(_report(ReportType.POST, post_id))
    miss = await world.history.check_previous_reversals(_report(ReportType.POST, str(uuid4())))

    assert hit.reversal_count == 1
    assert hit.most_recent_reversal.reversal_reason == "Satire"
    assert miss.has_previous_reversals is False
    assert miss.most_recent_reversal is None

    with pytest.raises(ModerationValidationError, match="Invalid report"):
        await world.history.check_previous_reversals(None)


@pytest.mark.asyncio
async def test_user_history_is_chronological(world, ids):
    now = world.now
    second = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=1),
        revoked_at=now - timedelta(hours=18),
        revoked_by=ids.admin,
        reversal_reason="Overturned",
    )
    first = await _action(world, moderator_id=ids.moderator, target_user_id=ids.target, created_at=now - timedelta(days=2))

    entries = await world.history.get_user_moderation_history(ids.target)
    assert [entry.action.id for entry in entries] == [first.id, second.id]
    assert entries[0].is_revoked is False
    assert entries[0].time_between_action_and_reversal is None
    assert entries[1].reversal_reason == "Overturned"
    assert entries[1].time_between_action_and_reversal == timedelta(hours=6)

    active_only = await world.history.get_user_moderation_history(ids.target, include_revoked=False)
    assert [entry.action.id for entry in active_only] == [first.id]


@pytest.mark.asyncio
async def test_action_logs_filter_and_paginate(world, ids):
    now = world.now
    for offset in range(5):
        await _action(world, moderator_id=ids.moderator, target_user_id=ids.target, created_at=now - timedelta(hours=offset))
    reversed_action = await _action(
        world,
        moderator_id=ids.other_moderator,
        target_user_id=ids.reporter,
        created_at=now - timedelta(days=2),
        revoked_at=now - timedelta(days=1),
        revoked_by=ids.admin,
        reversal_reason="Mistake",
    )
    actor = ActorContext(ids.moderator, UserRole.MODERATOR)

    page, total = await world.history.fetch_moderation_logs(actor, limit=2, offset=1)
    assert total == 6
    assert [item.created_at for item in page] == [now - timedelta(hours=1), now - timedelta(hours=2)]

    reversed_only, total = await world.history.fetch_moderation_logs(actor, ActionLogFilters(recently_reversed=True))
    assert [item.id for item in reversed_only] == [reversed_action.id]

    searched, total = await world.history.fetch_moderation_logs(actor, ActionLogFilters(search_query=ids.reporter))
    assert total == 1

    with pytest.raises(UnauthorizedError):
        await world.history.fetch_moderation_logs(ActorContext(ids.reporter))


@pytest.mark.asyncio
async def test_action_logs_expiry_filters(world, ids):
    now = world.now
    expired = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=3),
        action_type=ModerationActionType.USER_SUSPENDED,
        expires_at=now - timedelta(days=1),
    )
    running = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=1),
        action_type=ModerationActionType.USER_SUSPENDED,
        expires_at=now + timedelta(days=1),
    )
    actor = ActorContext(ids.moderator, UserRole.MODERATOR)

    expired_only, _ = await world.history.fetch_moderation_logs(actor, ActionLogFilters(expired_only=True))
    current, _ = await world.history.fetch_moderation_logs(actor, ActionLogFilters(non_expired_only=True))
    assert [item.id for item in expired_only] == [expired.id]
    assert [item.id for item in current] == [running.id]


@pytest.mark.asyncio
async def test_action_log_export_is_admin_only_csv(world, ids):
    now = world.now
    action = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(hours=3),
        revoked_at=now,
        revoked_by=ids.admin,
        reversal_reason="Context missed",
    )

    with pytest.raises(UnauthorizedError, match="Only admins can export action logs"):
        await world.history.export_action_logs_csv(ActorContext(ids.moderator, UserRole.MODERATOR))

    content = await world.history.export_action_logs_csv(ActorContext(ids.admin, UserRole.ADMIN))
    header, row = content.split("\n")

    assert header == ",".join(ACTION_LOG_HEADERS)
    assert row.startswith(f'"{action.id}","{ids.moderator}","{ids.target}","user_warned"')
    parsed = next(csv.reader(io.StringIO(row)))
    assert len(parsed) == 17
    assert parsed[6] == "Posting spam, again"
    assert parsed[11] == "No"
    assert parsed[12] == action.created_at.isoformat()
    assert parsed[15] == "Context missed"
    assert parsed[16] == "3.00"


@pytest.mark.asyncio
async def test_reversal_history_and_export(world, ids):
    now = world.now
    self_reversed = await _action(
        world,
        moderator_id=ids.moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=2),
        revoked_at=now - timedelta(days=1),
        revoked_by=ids.moderator,
        reversal_reason="My own MISTAKE",
    )
    await _action(
        world,
        moderator_id=ids.other_moderator,
        target_user_id=ids.target,
        created_at=now - timedelta(days=2),
        revoked_at=now - timedelta(hours=1),
        revoked_by=ids.admin,
        reversal_reason="Appeal",
    )
    admin = ActorContext(ids.admin, UserRole.ADMIN)

    entries = await world.history.get_reversal_history(admin)
    assert [entry.reversal_reason for entry in entries] == ["Appeal", "My own MISTAKE"]

    filtered = await world.history.get_reversal_history(admin, ReversalHistoryFilters(reversal_reason="mistake"))
    [entry] = filtered
    assert entry.action.id == self_reversed.id
    assert entry.is_self_reversal is True
    assert entry.moderator_username == "mod_one"
    assert entry.target_username == "target"
    assert entry.time_between_action_and_reversal == timedelta(days=1)

    content = await world.history.export_reversal_history_csv(admin, ReversalHistoryFilters(moderator_id=ids.moderator))
    header, row = content.split("\n")
    assert header == ",".join(REVERSAL_HISTORY_HEADERS)
    parsed = next(csv.reader(io.StringIO(row)))
    assert parsed[3] == "mod_one"
    assert parsed[13] == "24.00"
    assert parsed[14] == "Yes"
    assert parsed[15] == "No"


@pytest.mark.asyncio
async def test_reversal_history_validates_filters(world, ids):
    admin = ActorContext(ids.admin, UserRole.ADMIN)
    with pytest.raises(ModerationValidationError, match="Invalid moderator ID format"):
        await world.history.get_reversal_history(admin, ReversalHistoryFilters(moderator_id="nope"))
    with pytest.raises(ModerationValidationError, match="Start date must be before end date"):
        await world.history.get_reversal_history(
            admin, ReversalHistoryFilters(start_date="2024-05-02T00:00:00Z", end_date="2024-05-01T00:00:00Z")
        )
    with pytest.raises(ModerationValidationError, match="Invalid start date format"):
        await world.history.get_reversal_history(admin, ReversalHistoryFilters(start_date="yesterday"))


def test_render_csv_quotes_only_data_rows():
    content = render_csv(("A", "B"), [('say "hi"', None), (True, 2)])
    assert content.split("\n") == ["A,B", '"say ""hi""",""', '"Yes","2"']


@pytest.mark.asyncio
async def test_repeat_offender_and_violation_timeline(world, ids):
    now = world.now
    for days in (1, 10, 20):
        await _action(world, moderator_id=ids.moderator, target_user_id=ids.target, created_at=now - timedelta(days=days))
    await _action(world, moderator_id=ids.moderator, target_user_id=ids.reporter, created_at=now - timedelta(days=45))

    assert await world.history.detect_repeat_offender(ids.target) is True
    assert await world.history.detect_repeat_offender(ids.reporter) is False
    assert await world.history.detect_repeat_offender(None) is False

    timeline = await world.history.calculate_violation_timeline(ids.target)
    assert (timeline.last_7_days, timeline.last_30_days, timeline.last_90_days) == (1, 3, 3)
    assert timeline.message == "1 violation in last 7 days"

    older = await world.history.calculate_violation_timeline(ids.reporter)
    assert older.message == "1 violation in last 90 days"
    assert await world.history.calculate_violation_timeline("") is None
