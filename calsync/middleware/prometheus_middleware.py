"""Prometheus metrics middleware for HTTP request instrumentation.

Usage:
    from calsync.middleware.prometheus_middleware import PrometheusMiddleware
    app.add_middleware(PrometheusMiddleware)
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog

from calsync.services.metrics import REQUEST_COUNT, REQUEST_LATENCY

logger = structlog.get_logger()


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts and times HTTP requests by method, endpoint and status.

    /metrics and /health are not recorded.
    """

    EXCLUDED_ENDPOINTS = {"/metrics", "/health"}

    async def dispatch(self, request: Request, call_next) -> Response:
        endpoint = request.url.path
        if endpoint in self.EXCLUDED_ENDPOINTS:
            return await call_next(request)

        normalized_endpoint = normalize_endpoint(endpoint)
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error(
                "request_error",
                endpoint=endpoint,
                method=request.method,
                error=str(e)
            )
            raise
        finally:
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=normalized_endpoint,
                status=str(status_code)
            ).inc()
            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=normalized_endpoint
            ).observe(time.perf_counter() - start_time)

        return response


def _is_dynamic_segment(segment: str) -> bool:
    if segment.isdigit():
        return True

    # UUID-like: mostly hex chars and dashes
    if len(segment) >= 32:
        hex_chars = sum(1 for c in segment if c in "0123456789abcdefABCDEF-")
        return hex_chars / len(segment) > 0.8

    return False


def normalize_endpoint(endpoint: str) -> str:
    """Replace id-like path segments, e.g. /api/calendar/events/<uuid>/ics -> /api/calendar/events/{id}/ics."""
    return "/".join(
        "{id}" if part and _is_dynamic_segment(part) else part
        for part in endpoint.split("/")
    )
