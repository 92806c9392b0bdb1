"""Unit tests for the asyncpg-backed moderation repositories."""

from __future__ import annotations

import copy
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest

from app.moderation.domain.errors import ImmutableActionError
from app.moderation.domain.models import (
    ActionMetadata,
    ModerationAction,
    ModerationActionType,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    ReversalDetails,
)
from app.moderation.domain.repositories import ActionQuery
from app.moderation.infra.postgres_repo import (
    PostgresActionRepository,
    PostgresReportRepository,
    PostgresUnitOfWork,
)

CREATED_AT = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

_INSERT_COLUMNS = (
    "id",
    "moderator_id",
    "target_user_id",
    "action_type",
    "target_type",
    "target_id",
    "reason",
    "duration_days",
    "expires_at",
    "related_report_id",
    "internal_notes",
    "notification_sent",
    "notification_id",
    "metadata",
    "created_at",
)


class FakePool:
    """Lightweight asyncpg.Pool stand-in that keeps moderation_actions rows in memory."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.queries: list[tuple[str, tuple[object, ...]]] = []

    async def fetch(self, query: str, *params: object) -> list[dict[str, Any]]:
        self.queries.append((query, params))
        return []

    async def fetchrow(self, query: str, *params: object) -> dict[str, Any] | None:
        self.queries.append((query, params))
        if "INSERT INTO moderation_actions" in query:
            row = dict(zip(_INSERT_COLUMNS, params))
            row.update(revoked_at=None, revoked_by=None)
            self.rows[row["id"]] = row
            return dict(row)
        if "UPDATE moderation_actions" in query:
            row = self.rows.get(params[0])
            if row is None or row["revoked_at"] is not None:
                return None
            if "SET revoked_at" in query:
                _, row["revoked_at"], row["revoked_by"], row["metadata"] = params
            else:
                (
                    _,
                    row["reason"],
                    row["duration_days"],
                    row["expires_at"],
                    row["internal_notes"],
                    row["notification_sent"],
                    row["notification_id"],
                    row["metadata"],
                ) = params
            return dict(row)
        if "FROM moderation_actions WHERE id = $1" in query:
            row = self.rows.get(params[0])
            return dict(row) if row else None
        if "UPDATE moderation_reports" in query:
            return None
        raise NotImplementedError(query)

    async def fetchval(self, query: str, *params: object) -> Any:
        self.queries.append((query, params))
        if "SELECT 1 FROM moderation_actions" in query:
            return 1 if params[0] in self.rows else None
        raise NotImplementedError(query)


def _action(action_id: str = "a1") -> ModerationAction:
    return ModerationAction(
        id=action_id,
        moderator_id="m1",
        target_user_id="u1",
        action_type=ModerationActionType.USER_SUSPENDED,
        reason="Spam",
        created_at=CREATED_AT,
        duration_days=3,
    )


@pytest.mark.asyncio
async def test_create_and_get_round_trip_metadata() -> None:
    pool = FakePool()
    repo = PostgresActionRepository(pool)
    action = _action()
    action.metadata = ActionMetadata(extra={"source": "queue"})

    created = await repo.create(action)
    fetched = await repo.get("a1")

    assert json.loads(pool.rows["a1"]["metadata"]) == {"source": "queue"}
    assert created.metadata.extra == {"source": "queue"}
    assert fetched is not None
    assert fetched.duration_days == 3
    assert fetched.is_revoked is False
    assert await repo.get("missing") is None


@pytest.mark.asyncio
async def test_revoke_once_then_immutable() -> None:
    pool = FakePool()
    repo = PostgresActionRepository(pool)
    await repo.create(_action())

    reversal = _action()
    reversal.revoked_at = CREATED_AT
    reversal.revoked_by = "admin"
    reversal.metadata = ActionMetadata(reversal=ReversalDetails(reversal_reason="Appeal", is_self_reversal=False))
    revoked = await repo.revoke(reversal)

    assert revoked.revoked_by == "admin"
    assert revoked.reversal_reason == "Appeal"
    with pytest.raises(ImmutableActionError):
        await repo.revoke(reversal)
    with pytest.raises(ImmutableActionError):
        await repo.update(_action())
    assert pool.rows["a1"]["reason"] == "Spam"


@pytest.mark.asyncio
async def test_update_rejects_revoked_payload_without_touching_the_store() -> None:
    pool = FakePool()
    repo = PostgresActionRepository(pool)
    action = _action()
    action.revoked_at = CREATED_AT

    with pytest.raises(ImmutableActionError):
        await repo.update(action)
    assert pool.queries == []


@pytest.mark.asyncio
async def test_missing_rows_raise_key_error() -> None:
    pool = FakePool()
    with pytest.raises(KeyError):
        await PostgresActionRepository(pool).update(_action("ghost"))
    with pytest.raises(KeyError):
        await PostgresReportRepository(pool).update(
            Report(
                id="r-ghost",
                reporter_id="u2",
                report_type=ReportType.USER,
                target_id="u1",
                reason=ReportReason.SPAM,
                status=ReportStatus.RESOLVED,
                priority=3,
                created_at=CREATED_AT,
            )
        )


@pytest.mark.asyncio
async def test_list_builds_positional_filters() -> None:
    pool = FakePool()
    repo = PostgresActionRepository(pool)

    await repo.list(
        ActionQuery(
            moderator_id="m1",
            action_types=(ModerationActionType.USER_WARNED,),
            created_from=CREATED_AT,
            revoked=True,
        )
    )

    query, params = pool.queries[-1]
    assert (
        "WHERE moderator_id = $1 AND action_type = ANY($2::text[]) AND created_at >= $3 "
        "AND revoked_at IS NOT NULL" in query
    )
    assert params == ("m1", ["user_warned"], CREATED_AT)

    await repo.list(ActionQuery())
    query, params = pool.queries[-1]
    assert "WHERE" not in query
    assert params == ()


class FakeConnection:
    """Connection handed out by ``FakeTransactionalPool``; rows are restored on rollback."""

    def __init__(self, pool: "FakeTransactionalPool") -> None:
        self.pool = pool

    async def fetchrow(self, query: str, *params: object) -> dict[str, Any] | None:
        self.pool.on_connection.append(query)
        return await self.pool.fetchrow(query, *params)

    async def fetchval(self, query: str, *params: object) -> Any:
        self.pool.on_connection.append(query)
        return await self.pool.fetchval(query, *params)

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.pool.rows)
        self.pool.events.append("begin")
        try:
            yield
        except BaseException:
            self.pool.rows = snapshot
            self.pool.events.append("rollback")
            raise
        self.pool.events.append("commit")


class FakeTransactionalPool(FakePool):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[str] = []
        self.on_connection: list[str] = []

    @asynccontextmanager
    async def acquire(self):
        self.events.append("acquire")
        yield FakeConnection(self)


@pytest.mark.asyncio
async def test_unit_of_work_commits_on_bound_connection() -> None:
    pool = FakeTransactionalPool()
    repo = PostgresActionRepository(pool)
    uow = PostgresUnitOfWork(pool)

    async with uow.transaction():
        await repo.create(_action("a1"))
        async with uow.transaction():
            await repo.create(_action("a2"))

    assert pool.events == ["acquire", "begin", "commit"]
    assert set(pool.rows) == {"a1", "a2"}
    assert len(pool.on_connection) == 2


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_when_the_scope_fails() -> None:
    pool = FakeTransactionalPool()
    repo = PostgresActionRepository(pool)
    uow = PostgresUnitOfWork(pool)

    with pytest.raises(RuntimeError):
        async with uow.transaction():
            await repo.create(_action("a1"))
            raise RuntimeError("connection reset")

    assert pool.events == ["acquire", "begin", "rollback"]
    assert pool.rows == {}

    await repo.create(_action("a3"))
    assert pool.events == ["acquire", "begin", "rollback"]
    assert len(pool.on_connection) == 1
    assert set(pool.rows) == {"a3"}
