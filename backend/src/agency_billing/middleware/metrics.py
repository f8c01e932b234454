"""Prometheus metrics middleware for the billing API."""
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

billing_api_request_duration_seconds = Histogram(
    "billing_api_request_duration_seconds",
    "Billing API request duration in seconds",
    labelnames=["method", "route", "status_code"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

billing_api_requests_total = Counter(
    "billing_api_requests_total",
    "Total billing API requests",
    labelnames=["method", "route", "status_code"],
)

billing_api_errors_total = Counter(
    "billing_api_errors_total",
    "Total billing API requests that raised",
    labelnames=["method", "route", "error_type"],
)


def _route_label(request: Request) -> str:
    # Route template keeps ids out of the label set
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request duration and counts per route template."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            billing_api_errors_total.labels(
                method=request.method,
                route=_route_label(request),
                error_type=type(exc).__name__,
            ).inc()
            raise

        route = _route_label(request)
        billing_api_request_duration_seconds.labels(
            method=request.method, route=route, status_code=response.status_code
        ).observe(time.perf_counter() - start_time)
        billing_api_requests_total.labels(method=request.method, route=route, status_code=response.status_code).inc()
        return response
