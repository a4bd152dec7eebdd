"""Middleware modules."""

from calsync.middleware.auth import get_current_user_id
from calsync.middleware.prometheus_middleware import PrometheusMiddleware

__all__ = ["PrometheusMiddleware", "get_current_user_id"]
