"""Observability module for the coordinator - logging and metrics."""

from coordinator.observability.logging_config import setup_logging, get_logger
from coordinator.observability.metrics import (
    setup_metrics,
    http_requests_total,
    http_request_duration_seconds,
    agents_spawned_total,
    bead_claims_total,
    merge_attempts_total,
    patrol_passes_total,
    patrol_escalations_total,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "http_requests_total",
    "http_request_duration_seconds",
    "agents_spawned_total",
    "bead_claims_total",
    "merge_attempts_total",
    "patrol_passes_total",
    "patrol_escalations_total",
]
