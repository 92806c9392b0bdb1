import sys
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.infra import postgres
from app.main import app
from app.moderation.domain import container
from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import MetricsService
from app.moderation.domain.context import ContextService
from app.moderation.domain.history import HistoryService
from app.moderation.domain.models import UserProfile, UserRole
from app.moderation.domain.notifications import NotificationDispatcher
from app.moderation.domain.repositories import (
	InMemoryActionRepository,
	InMemoryContentRepository,
	InMemoryNotificationRepository,
	InMemoryProfileRepository,
	InMemoryReportRepository,
	InMemoryRestrictionRepository,
	InMemorySecurityEventRepository,
	InMemorySystemMetricRepository,
	InMemoryUnitOfWork,
)
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.reversal_service import ReversalService
from app.moderation.domain.security import SecurityEventRecorder, StaffAlerter
from app.settings import settings

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

REPORTER_ID = "11111111-1111-4111-8111-111111111111"
TARGET_ID = "22222222-2222-4222-8222-222222222222"
MODERATOR_ID = "33333333-3333-4333-8333-333333333333"
OTHER_MODERATOR_ID = "44444444-4444-4444-8444-444444444444"
ADMIN_ID = "55555555-5555-4555-8555-555555555555"


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests pass the caller role via X-User-Role, which is only trusted in
	dev mode.
	"""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture
def clock():
	return lambda: FIXED_NOW


@pytest.fixture
def profiles():
	repo = InMemoryProfileRepository()
	joined = datetime(2023, 1, 1, tzinfo=timezone.utc)
	repo.add(UserProfile(user_id=REPORTER_ID, username="reporter", created_at=joined))
	repo.add(UserProfile(user_id=TARGET_ID, username="target", created_at=joined))
	repo.add(UserProfile(user_id=MODERATOR_ID, username="mod_one", created_at=joined), UserRole.MODERATOR)
	repo.add(UserProfile(user_id=OTHER_MODERATOR_ID, username="mod_two", created_at=joined), UserRole.MODERATOR)
	repo.add(UserProfile(user_id=ADMIN_ID, username="admin", created_at=joined), UserRole.ADMIN)
	return repo


@pytest.fixture
def repos(profiles):
	"""Fresh in-memory stores wired into the service container."""
	bundle = {
		"reports": InMemoryReportRepository(),
		"actions": InMemoryActionRepository(),
		"restrictions": InMemoryRestrictionRepository(),
		"profiles": profiles,
		"content": InMemoryContentRepository(),
		"security_events": InMemorySecurityEventRepository(),
		"notifications": InMemoryNotificationRepository(),
		"system_metrics": InMemorySystemMetricRepository(),
	}
	container.configure(**bundle, enable_cache=False)
	try:
		yield bundle
	finally:
		container.configure(
			reports=InMemoryReportRepository(),
			actions=InMemoryActionRepository(),
			restrictions=InMemoryRestrictionRepository(),
			profiles=InMemoryProfileRepository(),
			content=InMemoryContentRepository(),
			security_events=InMemorySecurityEventRepository(),
			notifications=InMemoryNotificationRepository(),
			system_metrics=InMemorySystemMetricRepository(),
			enable_cache=False,
		)


@pytest_asyncio.fixture
async def api_client(repos):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def ids():
	return SimpleNamespace(
		reporter=REPORTER_ID,
		target=TARGET_ID,
		moderator=MODERATOR_ID,
		other_moderator=OTHER_MODERATOR_ID,
		admin=ADMIN_ID,
	)


@pytest.fixture
def world(repos, clock):
	"""Every moderation service built over the shared in-memory stores and a fixed clock."""
	security = SecurityEventRecorder(repository=repos["security_events"], clock=clock)
	dispatcher = NotificationDispatcher(repository=repos["notifications"], clock=clock)
	alerter = StaffAlerter(profiles=repos["profiles"], dispatcher=dispatcher)
	uow = InMemoryUnitOfWork(
		repos["reports"], repos["actions"], repos["restrictions"], repos["profiles"], repos["content"]
	)
	return SimpleNamespace(
		now=FIXED_NOW,
		security=security,
		dispatcher=dispatcher,
		reports=ReportService(
			reports=repos["reports"],
			profiles=repos["profiles"],
			content=repos["content"],
			security=security,
			alerter=alerter,
			clock=clock,
		),
		actions=ActionService(
			actions=repos["actions"],
			reports=repos["reports"],
			restrictions=repos["restrictions"],
			profiles=repos["profiles"],
			content=repos["content"],
			security=security,
			uow=uow,
			notifier=dispatcher,
			clock=clock,
		),
		reversals=ReversalService(
			actions=repos["actions"],
			restrictions=repos["restrictions"],
			profiles=repos["profiles"],
			security=security,
			security_events=repos["security_events"],
			uow=uow,
			notifier=dispatcher,
			alerter=alerter,
			clock=clock,
		),
		history=HistoryService(actions=repos["actions"], profiles=repos["profiles"], clock=clock),
		metrics=MetricsService(
			reports=repos["reports"], actions=repos["actions"], profiles=repos["profiles"], clock=clock
		),
		context=ContextService(
			profiles=repos["profiles"],
			reports=repos["reports"],
			actions=repos["actions"],
			content=repos["content"],
			clock=clock,
		),
		report_store=repos["reports"],
		action_store=repos["actions"],
		restrictions=repos["restrictions"],
		profiles=repos["profiles"],
		content=repos["content"],
		security_events=repos["security_events"],
		notifications=repos["notifications"],
		system_metrics=repos["system_metrics"],
		uow=uow,
	)
