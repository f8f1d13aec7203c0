# Centralized Prometheus metrics. The middleware below records timing
# and counts for every request, and the flag engine reports each
# decision so dashboards can show which mechanism is deciding outcomes.

from time import monotonic

from fastapi import Request
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

# Generic API latency + request counters, labelled by method and route.
REQUEST_DURATION_MS = Histogram(
    "request_duration_ms",
    "API request duration in milliseconds",
    ["method", "route"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000, 10000],
)
REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total API requests",
    ["method", "route", "status_code"],
)

# One series per (flag, environment, reason). Reasons are a closed set, so
# cardinality is bounded by the number of flags.
FLAG_EVALUATIONS_TOTAL = Counter(
    "flag_evaluations_total",
    "Feature flag evaluations grouped by deciding reason",
    ["flag_key", "environment", "reason"],
)

FLAG_SNAPSHOT_LOADS_TOTAL = Counter(
    "flag_snapshot_loads_total",
    "Flag snapshots loaded from the backing store",
    ["registry"],
)
FLAG_SNAPSHOT_LOAD_MS = Histogram(
    "flag_snapshot_load_ms",
    "Time spent building a flag snapshot in milliseconds",
    ["registry"],
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
)


def _label(value: object | None, default: str = "unknown") -> str:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return str(value)


def record_flag_evaluation(*, flag_key: str, environment: str | None, reason: str) -> None:
    FLAG_EVALUATIONS_TOTAL.labels(
        flag_key=_label(flag_key),
        environment=_label(environment),
        reason=_label(reason),
    ).inc()


def record_snapshot_load(registry: str, duration_ms: float) -> None:
    FLAG_SNAPSHOT_LOADS_TOTAL.labels(registry=_label(registry, "default")).inc()
    FLAG_SNAPSHOT_LOAD_MS.labels(registry=_label(registry, "default")).observe(duration_ms)


class MetricsMiddleware(BaseHTTPMiddleware):
    # Wraps every request to capture latency and a labelled count.
    async def dispatch(self, request: Request, call_next):
        start = monotonic()
        response = await call_next(request)
        duration_ms = (monotonic() - start) * 1000.0

        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or request.url.path
        REQUEST_DURATION_MS.labels(request.method, route_path).observe(duration_ms)
        REQUESTS_TOTAL.labels(request.method, route_path, str(response.status_code)).inc()
        return response
