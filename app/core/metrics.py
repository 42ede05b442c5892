"""Prometheus metrics for the application."""

import re
import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Ontology engine application info")
APP_INFO.info({"version": "0.1.0", "name": "ontology_engine"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

NODE_RUNS = Counter(
    "ontology_node_runs_total",
    "Pipeline node executions by outcome",
    ["node", "status"],
)

NODE_DURATION = Histogram(
    "ontology_node_duration_seconds",
    "Pipeline node wall-clock duration",
    ["node"],
    buckets=[0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800],
)

GENERATION_CALLS = Counter(
    "ontology_generation_calls_total",
    "Generation calls by outcome",
    ["status"],
)

CHANGE_REVIEWS = Counter(
    "ontology_change_reviews_total",
    "Pending change review actions",
    ["action", "outcome"],
)

GLOSSARY_ATTEMPTS = Counter(
    "ontology_glossary_attempts_total",
    "Glossary SQL validation attempts",
    ["outcome"],
)


# --- Middleware ---

# UUID path segments are collapsed to keep label cardinality bounded
_UUID_SEGMENT = re.compile(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def _normalize_path(path: str) -> str:
    """Replace UUIDs in paths with {id} to avoid high cardinality."""
    return _UUID_SEGMENT.sub("/{id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
