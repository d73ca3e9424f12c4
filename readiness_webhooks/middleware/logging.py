"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, assigns each request a
correlation id, and feeds the HTTP request metrics.
"""
import time
import uuid
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from readiness_webhooks.routes.metrics import track_request

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


def resolve_request_id(request: Request) -> str:
    """Reuse the caller's correlation id when it fits, otherwise mint one."""
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return str(uuid.uuid4())


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: request_id, org_id, user_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_id = resolve_request_id(request)
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

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
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        # Set by the auth dependency while the request was handled
        org_id = getattr(request.state, 'org_id', None)
        user_id = getattr(request.state, 'user_id', None)

        request_logger.info(
            "request_completed",
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
            org_id=str(org_id) if org_id else None,
            user_id=str(user_id) if user_id else None,
        )
        track_request(request.method, _route_template(request), response.status_code, duration_ms / 1000)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _route_template(request: Request) -> str:
    """The matched route's path template, so ids do not explode metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
