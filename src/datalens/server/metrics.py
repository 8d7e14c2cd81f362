"""
Prometheus metrics for DataLens workers.

This module provides:
- Job queue metrics (enqueued, processed, duration, queue depth)
- Scan metrics (runs by final status, duration, classifications created)
- DSR metrics (tasks by final status)
- ``start_metrics_server`` exposing /metrics for Prometheus scraping

Usage:
    from datalens.server.metrics import record_scan_finished, start_metrics_server

    start_metrics_server(9108)
    record_scan_finished("COMPLETED", duration_seconds=12.5)
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


# =============================================================================
# Metric Definitions
# =============================================================================

# Job Queue Metrics
JOBS_ENQUEUED_TOTAL = Counter(
    "datalens_jobs_enqueued_total",
    "Total number of jobs enqueued",
    ["task_type"],
)

JOBS_PROCESSED_TOTAL = Counter(
    "datalens_jobs_processed_total",
    "Total number of jobs processed",
    ["task_type", "status"],
)

JOB_PROCESSING_DURATION_SECONDS = Histogram(
    "datalens_job_processing_duration_seconds",
    "Job processing duration in seconds",
    ["task_type"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
)

JOB_QUEUE_SIZE = Gauge(
    "datalens_job_queue_size",
    "Number of jobs in queue by task type and status",
    ["task_type", "status"],
)

# Scan Metrics
SCANS_TOTAL = Counter(
    "datalens_scans_total",
    "Scan runs by final status",
    ["status"],
)

SCAN_DURATION_SECONDS = Histogram(
    "datalens_scan_duration_seconds",
    "Scan run duration in seconds",
    buckets=(1, 5, 10, 30, 60, 300, 900, 1800, 3600, 7200),
)

CLASSIFICATIONS_CREATED_TOTAL = Counter(
    "datalens_classifications_created_total",
    "PII classifications written by discovery",
    ["category"],
)

# DSR Metrics
DSR_TASKS_TOTAL = Counter(
    "datalens_dsr_tasks_total",
    "DSR tasks by type and final status",
    ["task_type", "status"],
)


# =============================================================================
# Recording Helpers
# =============================================================================


def record_job_enqueued(task_type: str) -> None:
    JOBS_ENQUEUED_TOTAL.labels(task_type=task_type).inc()


def record_job_processed(task_type: str, status: str, duration_seconds: float | None = None) -> None:
    JOBS_PROCESSED_TOTAL.labels(task_type=task_type, status=status).inc()
    if duration_seconds is not None:
        JOB_PROCESSING_DURATION_SECONDS.labels(task_type=task_type).observe(duration_seconds)


def set_queue_depth(task_type: str, status: str, count: int) -> None:
    JOB_QUEUE_SIZE.labels(task_type=task_type, status=status).set(count)


def record_scan_finished(status: str, duration_seconds: float | None = None) -> None:
    SCANS_TOTAL.labels(status=status).inc()
    if duration_seconds is not None:
        SCAN_DURATION_SECONDS.observe(duration_seconds)


def record_classification(category: str) -> None:
    CLASSIFICATIONS_CREATED_TOTAL.labels(category=category).inc()


def record_dsr_task(task_type: str, status: str) -> None:
    DSR_TASKS_TOTAL.labels(task_type=task_type, status=status).inc()


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:
    """Expose the default registry on ``http://addr:port/metrics``."""
    start_http_server(port, addr=addr)
    logger.info(f"Prometheus metrics server listening on {addr}:{port}")
