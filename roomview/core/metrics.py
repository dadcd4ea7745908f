"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, AI provider calls, job outcomes and quota
decisions. Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

from roomview import __version__

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "roomview_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# External AI provider calls
ai_calls_total = Counter(
    "roomview_ai_calls_total",
    "Total number of external AI provider calls",
    labelnames=["operation", "outcome"]
)

# Jobs Counter (asset preparation, renders, cleanups)
jobs_total = Counter(
    "roomview_jobs_total",
    "Total number of jobs reaching a terminal or retry state",
    labelnames=["kind", "status"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "roomview_active_jobs",
    "Number of jobs currently being worked on in this process",
    labelnames=["kind"]
)

# Circuit breaker state per AI provider (0 closed, 1 half-open, 2 open)
circuit_state_gauge = Gauge(
    "roomview_circuit_state",
    "AI provider circuit breaker state",
    labelnames=["circuit"]
)

# Quota admission decisions
quota_decisions_total = Counter(
    "roomview_quota_decisions_total",
    "Quota ledger decisions",
    labelnames=["category", "decision"]
)

# Telemetry events published on the event bus
events_total = Counter(
    "roomview_events_total",
    "Pipeline events published",
    labelnames=["event"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "roomview_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("remove_background"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_ai_call(operation: str, outcome: str):
    """Record an AI provider call (outcome: success or an error kind)."""
    ai_calls_total.labels(operation=operation, outcome=outcome).inc()


def record_job_status(kind: str, status: str):
    """Record a job reaching a status."""
    jobs_total.labels(kind=kind, status=status).inc()


@contextmanager
def track_active_job(kind: str):
    active_jobs_gauge.labels(kind=kind).inc()
    try:
        yield
    finally:
        active_jobs_gauge.labels(kind=kind).dec()


def record_quota_decision(category: str, decision: str):
    quota_decisions_total.labels(category=category, decision=decision).inc()


def record_event(event: str):
    events_total.labels(event=event).inc()


CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


def record_circuit_state(circuit: str, state: str):
    circuit_state_gauge.labels(circuit=circuit).set(CIRCUIT_STATE_VALUES[state])


def record_http_request(method: str, endpoint: str, status: int, duration_seconds: float):
    http_requests_total.labels(method=method, endpoint=endpoint, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version=__version__, environment="development")
