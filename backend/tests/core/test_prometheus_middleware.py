"""Unit tests for itsm_sync.middleware.prometheus using a minimal ASGI app."""

from __future__ import annotations

import pytest
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from itsm_sync.core.metrics import http_requests_total
from itsm_sync.middleware.prometheus import PrometheusMiddleware, _normalise_path


class TestNormalisePath:
    def test_uuid_collapsed(self):
        path = "/api/v1/sync-queue/550e8400-e29b-41d4-a716-446655440000/retry"
        assert _normalise_path(path) == "/api/v1/sync-queue/{id}/retry"

    def test_sys_id_collapsed(self):
        assert _normalise_path("/api/v1/x/" + "a" * 32) == "/api/v1/x/{id}"

    def test_ticket_id_collapsed(self):
        assert _normalise_path("/api/v1/tickets/TICKET-3f2a9c") == "/api/v1/tickets/{ticket_id}"

    def test_plain_paths_unchanged(self):
        assert _normalise_path("/api/v1/webhooks/jira") == "/api/v1/webhooks/jira"
        assert _normalise_path("/api/v1/routing/rules/") == "/api/v1/routing/rules"
        assert _normalise_path("/") == "/"


def _ok(request):
    return PlainTextResponse("ok")


def _erroring(request):
    raise ValueError("boom")


@pytest.fixture()
def client():
    application = Starlette(
        routes=[
            Route("/api/v1/sync-queue", _ok),
            Route("/api/health", _ok),
            Route("/api/v1/error", _erroring),
        ],
    )
    application.add_middleware(PrometheusMiddleware)
    return TestClient(application, raise_server_exceptions=False)


def _count(endpoint: str, status: str) -> float:
    return http_requests_total.labels(method="GET", endpoint=endpoint, status=status)._value.get()


class TestPrometheusMiddleware:
    def test_request_counted(self, client):
        before = _count("/api/v1/sync-queue", "200")
        assert client.get("/api/v1/sync-queue").status_code == 200
        assert _count("/api/v1/sync-queue", "200") == before + 1

    def test_health_skipped(self, client):
        before = _count("/api/health", "200")
        client.get("/api/health")
        assert _count("/api/health", "200") == before

    def test_error_recorded_as_500(self, client):
        before = _count("/api/v1/error", "500")
        assert client.get("/api/v1/error").status_code == 500
        assert _count("/api/v1/error", "500") == before + 1
