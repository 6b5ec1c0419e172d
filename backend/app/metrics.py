"""Prometheus metrics for monitoring.

Tracks request latency, GitHub API usage, fan-out pool outcomes,
job dispatch and delivery outcomes, and dead-letter notifications.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Info

# Application info
APP_INFO = Info("fum_app", "Framework Usage Miner application info")

# HTTP metrics
HTTP_REQUESTS_TOTAL = Counter(
    "fum_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "fum_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# GitHub API metrics
GITHUB_API_CALLS = Counter(
    "fum_github_api_calls_total",
    "Total GitHub API calls",
    ["endpoint", "status"],
)

GITHUB_API_DURATION = Histogram(
    "fum_github_api_duration_seconds",
    "GitHub API call duration",
    ["endpoint"],
)

# Fan-out pools
POOL_UNITS = Counter(
    "fum_pool_units_total",
    "Units processed by bounded task pools",
    ["pool", "status"],
)

# Pipeline
FRAMEWORKS_DETECTED = Counter(
    "fum_frameworks_detected_total",
    "Frameworks detected per repository",
    ["framework"],
)

PIPELINE_DURATION = Histogram(
    "fum_pipeline_duration_seconds",
    "Framework usage pipeline duration per job",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

STATS_WRITES = Counter(
    "fum_stats_writes_total",
    "Framework usage record writes",
    ["outcome"],
)

# Queue
JOBS_DISPATCHED = Counter(
    "fum_jobs_dispatched_total",
    "Job dispatch decisions",
    ["outcome"],
)

JOB_DELIVERIES = Counter(
    "fum_job_deliveries_total",
    "Job delivery outcomes",
    ["outcome"],
)

DEAD_LETTER_NOTIFICATIONS = Counter(
    "fum_dead_letter_notifications_total",
    "Operator notifications for dead-lettered jobs",
    ["status"],
)
