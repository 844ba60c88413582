"""Prometheus metrics configuration."""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

logger = structlog.get_logger("grailscan.metrics")

# Application info
app_info = Gauge(
    "app_info",
    "Application information",
    ["version"],
)

# Database connection pool metrics
db_connections_active = Gauge(
    "db_connections_active",
    "Number of active database connections",
)
db_connections_idle = Gauge(
    "db_connections_idle",
    "Number of idle database connections in pool",
)
db_pool_size = Gauge(
    "db_pool_size",
    "Configured database connection pool size",
)

# Database retry operation metrics
db_retry_attempts_total = Counter(
    "db_retry_attempts_total",
    "Total number of database operation retry attempts",
    ["operation_type"],
)
db_lock_errors_total = Counter(
    "db_lock_errors_total",
    "Total number of database lock errors encountered",
)
db_retries_failed_total = Counter(
    "db_retries_failed_total",
    "Total number of database operations that failed after all retries",
    ["operation_type"],
)
db_retry_duration_seconds = Histogram(
    "db_retry_duration_seconds",
    "Duration of database retry operations in seconds",
    ["operation_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Scanner metrics
trigger_decisions_total = Counter(
    "trigger_decisions_total",
    "Vision trigger decisions by reason",
    ["reason"],  # reason: TriggerReason value or "none"
)
vision_requests_total = Counter(
    "vision_requests_total",
    "Vision analyzer calls by mode and outcome",
    ["mode", "outcome"],  # mode: comparison, identification, quota; outcome: ok, empty, fallback, limit_reached, error
)
identification_searches_total = Counter(
    "identification_searches_total",
    "Identification catalog searches by outcome",
    ["outcome"],  # outcome: found, empty, no_terms
)
correction_cache_lookups_total = Counter(
    "correction_cache_lookups_total",
    "Correction cache lookups",
    ["result"],  # result: hit, miss
)
correction_cache_writes_total = Counter(
    "correction_cache_writes_total",
    "Correction cache save attempts",
    ["outcome"],  # outcome: written, conflict, below_threshold, invalid
)


def setup_metrics(app: FastAPI, app_version: str) -> None:
    """Setup Prometheus metrics using prometheus-fastapi-instrumentator.

    Args:
        app: FastAPI application instance
        app_version: Application version
    """
    if getattr(app.state, "_metrics_initialized", False):
        logger.debug("Metrics already initialized for this app instance, skipping")
        return

    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=[
            "/metrics",
            "/docs",
            "/openapi.json",
            "/redoc",
        ],
    )

    instrumentator.instrument(app).expose(app, endpoint="/metrics")

    app.state._metrics_initialized = True

    app_info.labels(version=app_version).set(1)

    logger.info("Metrics initialized", version=app_version)
