"""Request metrics middleware."""
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from usage_billing.metrics import http_request_duration_seconds, http_requests_total

UNTRACKED_PATHS = frozenset({"/metrics", "/health", "/health/ready"})


def route_label(request: Request) -> str:
    # Route template, so session and plan ids stay out of label values
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts API requests and observes their latency. Probes and scrapes are skipped."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in UNTRACKED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = route_label(request)
            http_requests_total.labels(method=request.method, route=route, status_code=str(status_code)).inc()
            http_request_duration_seconds.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )
