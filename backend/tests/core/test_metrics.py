"""Unit tests for itsm_sync.core.metrics. No database required."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

from itsm_sync.core.metrics import (
    app_info,
    conflict_skips_total,
    http_request_duration_seconds,
    http_requests_total,
    sync_deliveries_total,
    sync_delivery_duration_seconds,
    sync_identity_conflicts_total,
    sync_inflight,
    webhook_events_total,
)


class TestMetricTypes:
    def test_app_info_is_info(self):
        assert isinstance(app_info, Info)

    def test_http_metrics(self):
        assert isinstance(http_requests_total, Counter)
        assert isinstance(http_request_duration_seconds, Histogram)

    def test_sync_metrics(self):
        assert isinstance(sync_deliveries_total, Counter)
        assert isinstance(sync_delivery_duration_seconds, Histogram)
        assert isinstance(sync_identity_conflicts_total, Counter)
        assert isinstance(sync_inflight, Gauge)
        assert isinstance(webhook_events_total, Counter)
        assert isinstance(conflict_skips_total, Counter)


class TestLabels:
    def test_delivery_labels(self):
        child = sync_deliveries_total.labels(platform="jira", action="create", outcome="success")
        before = child._value.get()
        child.inc()
        assert child._value.get() == before + 1

    def test_webhook_labels(self):
        webhook_events_total.labels(platform="servicenow", action="update", outcome="success").inc()
        conflict_skips_total.labels(platform="servicenow", field="status").inc()
