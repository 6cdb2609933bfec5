"""
Prometheus metrics collection for the coordinator.

Provides:
- HTTP request metrics (count, duration)
- Coordination metrics (spawns, claims, merges, patrol passes)
- /metrics endpoint for Prometheus scraping
"""

import time
from typing import Callable

from fastapi import FastAPI, Response, Request
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, REGISTRY, CONTENT_TYPE_LATEST
)

from coordinator.config import settings


# ============================================================================
# Metrics Definitions
# ============================================================================

# HTTP Metrics
http_requests_total = Counter(
    'coordinator_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'coordinator_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0)
)

http_requests_in_progress = Gauge(
    'coordinator_http_requests_in_progress',
    'HTTP requests currently being processed',
    ['method', 'endpoint']
)

# Agent Metrics
agents_spawned_total = Counter(
    'coordinator_agents_spawned_total',
    'Total agents spawned',
    ['role']
)

agent_transitions_total = Counter(
    'coordinator_agent_transitions_total',
    'Agent lifecycle transitions',
    ['to_state']
)

# Bead Metrics
bead_claims_total = Counter(
    'coordinator_bead_claims_total',
    'Bead claim attempts',
    ['outcome']
)

beads_closed_total = Counter(
    'coordinator_beads_closed_total',
    'Beads terminally closed',
    ['status']
)

# Message Metrics
messages_sent_total = Counter(
    'coordinator_messages_sent_total',
    'Messages sent through the bus',
    ['message_type']
)

# Merge Queue Metrics
merge_attempts_total = Counter(
    'coordinator_merge_attempts_total',
    'Merge attempts by outcome',
    ['outcome']
)

# Patrol Metrics
patrol_passes_total = Counter(
    'coordinator_patrol_passes_total',
    'Patrol passes by outcome',
    ['outcome']
)

patrol_nudges_total = Counter(
    'coordinator_patrol_nudges_total',
    'Nudges sent to stuck agents'
)

patrol_escalations_total = Counter(
    'coordinator_patrol_escalations_total',
    'Escalations sent to the mayor',
    ['kind']
)

patrol_last_pass_agents = Gauge(
    'coordinator_patrol_last_pass_agents',
    'Agents per classification in the most recent patrol pass',
    ['workspace', 'classification']
)


# ============================================================================
# Metrics Middleware
# ============================================================================

class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    # Endpoints to exclude from detailed metrics (high cardinality)
    EXCLUDE_PATHS = {"/metrics", "/health", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDE_PATHS:
            return await call_next(request)

        path = self._normalize_path(request.url.path)
        method = request.method

        http_requests_in_progress.labels(method=method, endpoint=path).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status = response.status_code
        except Exception:
            status = 500
            raise
        finally:
            duration = time.perf_counter() - start_time

            http_requests_total.labels(
                method=method,
                endpoint=path,
                status=status
            ).inc()

            http_request_duration_seconds.labels(
                method=method,
                endpoint=path
            ).observe(duration)

            http_requests_in_progress.labels(method=method, endpoint=path).dec()

        return response

    def _normalize_path(self, path: str) -> str:
        """Normalize path to reduce cardinality.

        Replaces numeric IDs and UUIDs with placeholders.
        """
        parts = path.split("/")
        normalized = []

        for part in parts:
            if not part:
                continue
            if part.isdigit():
                normalized.append("{id}")
            elif len(part) == 36 and part.count("-") == 4:
                normalized.append("{uuid}")
            else:
                normalized.append(part)

        return "/" + "/".join(normalized) if normalized else "/"


# ============================================================================
# Setup Function
# ============================================================================

def setup_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection.

    Args:
        app: FastAPI application instance
    """
    if not settings.metrics_enabled:
        return

    app.add_middleware(MetricsMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(REGISTRY),
            media_type=CONTENT_TYPE_LATEST
        )


# ============================================================================
# Helper Functions
# ============================================================================

def record_spawn(role: str) -> None:
    agents_spawned_total.labels(role=role).inc()


def record_transition(to_state: str) -> None:
    agent_transitions_total.labels(to_state=to_state).inc()


def record_claim(outcome: str) -> None:
    """Record a claim attempt: won, noop or conflict."""
    bead_claims_total.labels(outcome=outcome).inc()


def record_bead_closed(status: str) -> None:
    beads_closed_total.labels(status=status).inc()


def record_message(message_type: str) -> None:
    messages_sent_total.labels(message_type=message_type).inc()


def record_merge_attempt(outcome: str) -> None:
    """Record a merge attempt: merged, awaiting or gate_failed."""
    merge_attempts_total.labels(outcome=outcome).inc()


def record_patrol_pass(outcome: str) -> None:
    patrol_passes_total.labels(outcome=outcome).inc()


def record_patrol_report(workspace: str, healthy: int, stuck: int, blocked: int) -> None:
    patrol_last_pass_agents.labels(workspace=workspace, classification="healthy").set(healthy)
    patrol_last_pass_agents.labels(workspace=workspace, classification="stuck").set(stuck)
    patrol_last_pass_agents.labels(workspace=workspace, classification="blocked").set(blocked)
