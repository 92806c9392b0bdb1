"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"mod_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"mod_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Moderation report submissions by outcome",
	["report_type", "outcome"],
)

MOD_SECURITY_EVENTS_TOTAL = Counter(
	"mod_security_events_total",
	"Security events recorded by the moderation service",
	["event_type"],
)

MOD_ACTIONS_TOTAL = Counter(
	"mod_actions_total",
	"Moderation actions recorded",
	["action_type"],
)

MOD_CASCADE_REMOVALS_TOTAL = Counter(
	"mod_cascade_removals_total",
	"Album removals by cascade mode",
	["mode"],
)

MOD_REVERSALS_TOTAL = Counter(
	"mod_reversals_total",
	"Moderation actions reversed",
	["action_type"],
)

MOD_NOTIFICATION_FAILURES_TOTAL = Counter(
	"mod_notification_failures_total",
	"Best-effort moderation notifications that failed to persist",
	["kind"],
)

MOD_CACHE_LOOKUPS_TOTAL = Counter(
	"mod_cache_lookups_total",
	"Read-through cache lookups",
	["cache", "result"],
)

MOD_CSV_EXPORTS_TOTAL = Counter(
	"mod_csv_exports_total",
	"Moderation CSV exports generated",
	["kind"],
)

MOD_ACTION_LATENCY_SECONDS = Histogram(
	"mod_action_latency_seconds",
	"Latency of moderation action execution",
	["action_type"],
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

AUTH_REJECTIONS_TOTAL = Counter(
	"mod_auth_rejections_total",
	"Requests rejected while resolving the caller",
	["reason"],
)

DEPENDENCY_UP = Gauge(
	"mod_dependency_up",
	"Whether a backing dependency answered its last readiness probe",
	["dependency"],
)

DEPENDENCY_LATENCY_SECONDS = Histogram(
	"mod_dependency_latency_seconds",
	"Readiness probe latency per dependency",
	["dependency"],
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def record_security_event(event_type: str) -> None:
	MOD_SECURITY_EVENTS_TOTAL.labels(event_type=event_type).inc()


def record_cache_lookup(cache: str, *, hit: bool) -> None:
	MOD_CACHE_LOOKUPS_TOTAL.labels(cache=cache, result="hit" if hit else "miss").inc()


def mark_dependency(name: str, ok: bool, latency_seconds: float | None = None) -> None:
	DEPENDENCY_UP.labels(dependency=name).set(1 if ok else 0)
	if ok and latency_seconds is not None:
		DEPENDENCY_LATENCY_SECONDS.labels(dependency=name).observe(latency_seconds)
