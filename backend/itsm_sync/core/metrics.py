"""Prometheus metric definitions for the ITSM sync engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

# ── Application info ────────────────────────────────────────────────
app_info = Info("itsm_sync", "ITSM sync engine application metadata")

# ── HTTP request metrics ────────────────────────────────────────────
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method"],
)

# ── Database pool metrics ───────────────────────────────────────────
db_pool_size = Gauge("db_pool_size", "Current number of connections in the pool")
db_pool_checked_out = Gauge("db_pool_checked_out", "Connections currently in use")
db_pool_overflow = Gauge("db_pool_overflow", "Current overflow connections beyond pool_size")

# ── Outbound delivery metrics ───────────────────────────────────────
sync_deliveries_total = Counter(
    "itsm_sync_deliveries_total",
    "Outbound delivery attempts by platform and outcome",
    ["platform", "action", "outcome"],
)

sync_delivery_duration_seconds = Histogram(
    "itsm_sync_delivery_duration_seconds",
    "Adapter send() duration in seconds",
    ["platform"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

sync_queue_claims_total = Counter(
    "itsm_sync_queue_claims_total",
    "Queue claim attempts (claimed or lost race)",
    ["result"],
)

sync_inflight = Gauge(
    "itsm_sync_inflight_deliveries",
    "Deliveries currently held in processing by this worker",
)

sync_identity_conflicts_total = Counter(
    "itsm_sync_identity_conflicts_total",
    "External ids already linked to a different internal ticket",
    ["platform"],
)

# ── Inbound webhook metrics ─────────────────────────────────────────
webhook_events_total = Counter(
    "itsm_webhook_events_total",
    "Inbound webhook calls by platform, resolved action and outcome",
    ["platform", "action", "outcome"],
)

conflict_skips_total = Counter(
    "itsm_conflict_skips_total",
    "Field changes rejected by a conflict policy",
    ["platform", "field"],
)

# ── Background task metrics ─────────────────────────────────────────
bg_task_runs_total = Counter(
    "bg_task_runs_total",
    "Total background task executions",
    ["task_name", "status"],
)

bg_task_last_success = Gauge(
    "bg_task_last_success_timestamp",
    "Timestamp of last successful background task run",
    ["task_name"],
)
