"""Platform health summaries built from recorded system metrics."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from app.moderation.domain.caching import MetricsCache, cache_key
from app.moderation.domain.errors import wrap_unexpected
from app.moderation.domain.models import SystemMetric
from app.moderation.domain.repositories import SystemMetricRepository
from app.settings import settings

DB_DEGRADED_MS = 200
DB_DOWN_MS = 500
SLOW_QUERY_MS = 1000
TREND_POINTS = 24
SLOW_QUERY_SAMPLE = 100
ERROR_LOG_SAMPLE = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _values(metrics: Sequence[SystemMetric], metric_type: str) -> list[float]:
    """Values of one metric type, newest first."""
    return [item.metric_value for item in metrics if item.metric_type == metric_type]


def _average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for an empty sample."""
    if not values:
        return 0
    ordered = sorted(values)
    index = max(math.ceil(pct / 100 * len(ordered)) - 1, 0)
    return ordered[index]


def _trend(values: Sequence[float]) -> list[float]:
    return list(reversed(values[:TREND_POINTS]))


def database_status(avg_query_ms: float) -> str:
    if avg_query_ms > DB_DOWN_MS:
        return "down"
    if avg_query_ms > DB_DEGRADED_MS:
        return "degraded"
    return "healthy"


def error_rate_status(current: float, threshold: float) -> str:
    if current > threshold * 2:
        return "critical"
    if current > threshold:
        return "elevated"
    return "normal"


def error_severity(count: int) -> str:
    if count > 100:
        return "critical"
    if count > 50:
        return "high"
    if count > 10:
        return "medium"
    return "low"


def query_recommendation(query: str, avg_duration: float) -> str:
    if "SELECT *" in query:
        return "Consider selecting only required columns instead of SELECT *"
    if "JOIN" in query and avg_duration > 2000:
        return "Consider adding indexes on join columns or optimizing join conditions"
    if "WHERE" in query and avg_duration > 1500:
        return "Consider adding indexes on WHERE clause columns"
    if "ORDER BY" in query and avg_duration > 1500:
        return "Consider adding indexes on ORDER BY columns"
    return "Consider reviewing query execution plan and adding appropriate indexes"


def summarize_health(metrics: Sequence[SystemMetric]) -> dict[str, Any]:
    query_times = _values(metrics, "database_query_time")
    avg_query = _average(query_times)
    storage = _values(metrics, "storage_usage")
    used = storage[0] if storage else 0
    capacity = settings.storage_capacity_gb
    errors = _values(metrics, "error_rate")
    current_error = errors[0] if errors else 0
    threshold = settings.error_rate_threshold
    return {
        "database": {
            "status": database_status(avg_query),
            "avg_query_time": avg_query,
            "slow_queries": sum(1 for value in query_times if value > SLOW_QUERY_MS),
        },
        "storage": {
            "total_capacity_gb": capacity,
            "used_capacity_gb": used,
            "available_capacity_gb": capacity - used,
            "usage_percentage": used / capacity * 100 if capacity else 0,
        },
        "error_rate": {
            "current_rate": current_error,
            "threshold": threshold,
            "status": error_rate_status(current_error, threshold),
        },
    }


def summarize_performance(metrics: Sequence[SystemMetric]) -> dict[str, Any]:
    def timing(metric_type: str) -> dict[str, Any]:
        values = _values(metrics, metric_type)
        return {
            "avg": _average(values),
            "p95": percentile(values, 95),
            "p99": percentile(values, 99),
            "trend": _trend(values),
        }

    errors = _values(metrics, "error_rate")
    cache_hits = _values(metrics, "cache_hit_rate")
    return {
        "page_load_time": timing("page_load_time"),
        "api_response_time": timing("api_response_time"),
        "database_query_time": timing("database_query_time"),
        "error_rate": {
            "current": errors[0] if errors else 0,
            "threshold": settings.error_rate_threshold,
            "trend": _trend(errors),
        },
        "cache_hit_rate": {"current": cache_hits[0] if cache_hits else 0, "trend": _trend(cache_hits)},
    }


@dataclass
class SystemHealthService:
    metrics: SystemMetricRepository
    cache: Optional[MetricsCache] = None
    clock: Callable[[], datetime] = _now

    async def _cached(self, name: str, builder, **params: Any) -> Any:
        if self.cache is None:
            return await builder()
        return await self.cache.get_or_build(
            cache_key(name, **params), ttl=settings.health_cache_ttl_seconds, builder=builder
        )

    @wrap_unexpected("fetching system health")
    async def fetch_system_health(self) -> dict[str, Any]:
        async def build() -> dict[str, Any]:
            since = self.clock() - timedelta(hours=1)
            return summarize_health(await self.metrics.list_metrics(since=since, limit=1000))

        return await self._cached("system_health", build)

    @wrap_unexpected("fetching performance metrics")
    async def fetch_performance_metrics(self, hours_back: int = 24) -> dict[str, Any]:
        async def build() -> dict[str, Any]:
            since = self.clock() - timedelta(hours=hours_back)
            return summarize_performance(await self.metrics.list_metrics(since=since, limit=10000))

        return await self._cached("performance_metrics", build, hours_back=hours_back)

    @wrap_unexpected("fetching slow queries")
    async def fetch_slow_queries(self) -> list[dict[str, Any]]:
        rows = await self.metrics.list_metrics(
            metric_type="database_query_time", min_value=SLOW_QUERY_MS, limit=SLOW_QUERY_SAMPLE
        )
        grouped: dict[str, list[float]] = defaultdict(list)
        for row in rows:
            grouped[str(row.metadata.get("query") or "Unknown query")].append(float(row.metadata.get("duration") or 0))
        queries = [
            {
                "query": query,
                "avg_duration": _average(durations),
                "execution_count": len(durations),
                "recommendation": query_recommendation(query, _average(durations)),
            }
            for query, durations in grouped.items()
        ]
        queries.sort(key=lambda item: (-item["avg_duration"], item["query"]))
        return queries

    @wrap_unexpected("fetching error logs")
    async def fetch_error_logs(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = await self.metrics.list_metrics(metric_type="error_rate", limit=ERROR_LOG_SAMPLE)
        grouped: dict[str, dict[str, Any]] = {}
        for row in rows:
            message = str(row.metadata.get("error_message") or "Unknown error")
            entry = grouped.setdefault(message, {"count": 0, "last_occurrence": row.recorded_at})
            entry["count"] += 1
            entry["last_occurrence"] = max(entry["last_occurrence"], row.recorded_at)
        logs = [
            {
                "message": message,
                "count": entry["count"],
                "last_occurrence": entry["last_occurrence"].isoformat(),
                "severity": error_severity(entry["count"]),
            }
            for message, entry in grouped.items()
        ]
        logs.sort(key=lambda item: (-item["count"], item["message"]))
        return logs[:limit]
