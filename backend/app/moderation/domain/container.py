"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from typing import Optional

import asyncpg
from redis.asyncio import Redis

from app.infra.redis import RedisProxy, redis_client
from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import MetricsService
from app.moderation.domain.caching import MetricsCache
from app.moderation.domain.context import ContextService
from app.moderation.domain.history import HistoryService
from app.moderation.domain.notifications import NotificationDispatcher
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.repositories import (
    ActionRepository,
    ContentRepository,
    InMemoryActionRepository,
    InMemoryContentRepository,
    InMemoryNotificationRepository,
    InMemoryProfileRepository,
    InMemoryReportRepository,
    InMemoryRestrictionRepository,
    InMemorySecurityEventRepository,
    InMemorySystemMetricRepository,
    InMemoryUnitOfWork,
    NotificationRepository,
    ProfileRepository,
    ReportRepository,
    RestrictionRepository,
    SecurityEventRepository,
    SystemMetricRepository,
    UnitOfWork,
)
from app.moderation.domain.reversal_service import ReversalService
from app.moderation.domain.security import SecurityEventRecorder, StaffAlerter
from app.moderation.domain.system_health import SystemHealthService
from app.moderation.domain.trending import TrendingService
from app.moderation.infra.postgres_repo import (
    PostgresActionRepository,
    PostgresContentRepository,
    PostgresNotificationRepository,
    PostgresProfileRepository,
    PostgresReportRepository,
    PostgresRestrictionRepository,
    PostgresSecurityEventRepository,
    PostgresSystemMetricRepository,
    PostgresUnitOfWork,
)

_reports: ReportRepository = InMemoryReportRepository()
_actions: ActionRepository = InMemoryActionRepository()
_restrictions: RestrictionRepository = InMemoryRestrictionRepository()
_profiles: ProfileRepository = InMemoryProfileRepository()
_content: ContentRepository = InMemoryContentRepository()
_security_events: SecurityEventRepository = InMemorySecurityEventRepository()
_notifications: NotificationRepository = InMemoryNotificationRepository()
_system_metrics: SystemMetricRepository = InMemorySystemMetricRepository()
_uow: UnitOfWork | None = None
_redis_proxy: RedisProxy = redis_client
# Caching stays off until a redis connection is configured explicitly.
_cache: MetricsCache | None = None

_report_service: ReportService
_action_service: ActionService
_reversal_service: ReversalService
_history_service: HistoryService
_metrics_service: MetricsService
_trending_service: TrendingService
_health_service: SystemHealthService
_context_service: ContextService


def _build() -> None:
    global _report_service, _action_service, _reversal_service, _history_service
    global _metrics_service, _trending_service, _health_service, _context_service
    security = SecurityEventRecorder(repository=_security_events)
    dispatcher = NotificationDispatcher(repository=_notifications)
    alerter = StaffAlerter(profiles=_profiles, dispatcher=dispatcher)
    uow = _uow or InMemoryUnitOfWork(_reports, _actions, _restrictions, _profiles, _content)
    _report_service = ReportService(
        reports=_reports,
        profiles=_profiles,
        content=_content,
        security=security,
        alerter=alerter,
    )
    _action_service = ActionService(
        actions=_actions,
        reports=_reports,
        restrictions=_restrictions,
        profiles=_profiles,
        content=_content,
        security=security,
        uow=uow,
        notifier=dispatcher,
    )
    _reversal_service = ReversalService(
        actions=_actions,
        restrictions=_restrictions,
        profiles=_profiles,
        security=security,
        security_events=_security_events,
        uow=uow,
        notifier=dispatcher,
        alerter=alerter,
    )
    _history_service = HistoryService(actions=_actions, profiles=_profiles)
    _metrics_service = MetricsService(reports=_reports, actions=_actions, profiles=_profiles, cache=_cache)
    _trending_service = TrendingService(content=_content, profiles=_profiles, cache=_cache)
    _health_service = SystemHealthService(metrics=_system_metrics, cache=_cache)
    _context_service = ContextService(profiles=_profiles, reports=_reports, actions=_actions, content=_content)


_build()


def configure(
    *,
    reports: Optional[ReportRepository] = None,
    actions: Optional[ActionRepository] = None,
    restrictions: Optional[RestrictionRepository] = None,
    profiles: Optional[ProfileRepository] = None,
    content: Optional[ContentRepository] = None,
    security_events: Optional[SecurityEventRepository] = None,
    notifications: Optional[NotificationRepository] = None,
    system_metrics: Optional[SystemMetricRepository] = None,
    redis_proxy: Optional[RedisProxy] = None,
    enable_cache: Optional[bool] = None,
    uow: Optional[UnitOfWork] = None,
) -> None:
    """Swap repositories (tests pass in-memory ones) and rebuild every service."""

    global _reports, _actions, _restrictions, _profiles, _content
    global _security_events, _notifications, _system_metrics, _redis_proxy, _cache
    global _uow
    stores = (reports, actions, restrictions, profiles, content)
    if reports is not None:
        _reports = reports
    if actions is not None:
        _actions = actions
    if restrictions is not None:
        _restrictions = restrictions
    if profiles is not None:
        _profiles = profiles
    if content is not None:
        _content = content
    if security_events is not None:
        _security_events = security_events
    if notifications is not None:
        _notifications = notifications
    if system_metrics is not None:
        _system_metrics = system_metrics
    if uow is not None:
        _uow = uow
    elif any(store is not None for store in stores):
        # in-memory scope is rebuilt over the new stores
        _uow = None
    _redis_proxy = redis_proxy or _redis_proxy
    if enable_cache is not None:
        _cache = MetricsCache(_redis_proxy) if enable_cache else None
    elif redis_proxy is not None:
        _cache = MetricsCache(_redis_proxy)
    _build()


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy) -> None:
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(
        reports=PostgresReportRepository(pool),
        actions=PostgresActionRepository(pool),
        restrictions=PostgresRestrictionRepository(pool),
        profiles=PostgresProfileRepository(pool),
        content=PostgresContentRepository(pool),
        security_events=PostgresSecurityEventRepository(pool),
        notifications=PostgresNotificationRepository(pool),
        system_metrics=PostgresSystemMetricRepository(pool),
        uow=PostgresUnitOfWork(pool),
        redis_proxy=proxy,
        enable_cache=True,
    )


def get_report_service() -> ReportService:
    return _report_service


def get_action_service() -> ActionService:
    return _action_service


def get_reversal_service() -> ReversalService:
    return _reversal_service


def get_history_service() -> HistoryService:
    return _history_service


def get_metrics_service() -> MetricsService:
    return _metrics_service


def get_trending_service() -> TrendingService:
    return _trending_service


def get_health_service() -> SystemHealthService:
    return _health_service


def get_context_service() -> ContextService:
    return _context_service


def get_profile_repository() -> ProfileRepository:
    return _profiles


def get_report_repository() -> ReportRepository:
    return _reports
