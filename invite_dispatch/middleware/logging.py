"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from invite_dispatch.routes import metrics

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        # Bind context to logger for this request
        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            metrics.track_request(request.method, _endpoint(request), 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        metrics.track_request(request.method, _endpoint(request), response.status_code, duration_ms / 1000)

        return response


def _endpoint(request: Request) -> str:
    """Route template (``/api/whatsapp/status/{job_id}``), not the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
