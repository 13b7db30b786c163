"""Per-request Prometheus metrics for the sync API."""

from __future__ import annotations

import re
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from itsm_sync.core.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

_UNLABELLED_PATHS = frozenset({"/api/health", "/metrics"})

# Queue item UUIDs, ServiceNow sys_ids, internal ticket ids
_ID_SEGMENTS = (
    (re.compile(r"^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$"), "{id}"),
    (re.compile(r"^TICKET-[0-9a-f]+$"), "{ticket_id}"),
)


def _label_segment(segment: str) -> str:
    for pattern, label in _ID_SEGMENTS:
        if pattern.match(segment):
            return label
    return segment


def _normalise_path(path: str) -> str:
    """Endpoint label for ``path`` with id segments replaced by placeholders.

    /api/v1/sync-queue/550e8400-e29b-41d4-a716-446655440000/retry -> /api/v1/sync-queue/{id}/retry
    """
    return "/".join(_label_segment(s) for s in path.rstrip("/").split("/")) or "/"


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        method = request.method
        if request.url.path in _UNLABELLED_PATHS:
            return await call_next(request)

        endpoint = _normalise_path(request.url.path)
        status = "500"
        http_requests_in_progress.labels(method=method).inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            http_requests_in_progress.labels(method=method).dec()
