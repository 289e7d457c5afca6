"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from author_billing.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Path segments under /subscriptions that are routes, not subscription IDs
_SUBSCRIPTION_ROUTES = frozenset({"create", "user", "author", "access", "stats"})


def _completion_level(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code >= 400:
        return "warning"
    return "info"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation id bound to all logs it produces.

    An incoming X-Request-ID header is reused so a caller can follow a
    purchase across services; otherwise a new id is generated. Client errors
    (declines, conflicts) complete at WARNING, server errors at ERROR.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        bind_context(request_id=request_id)

        details = {}
        if self.include_request_details:
            details = {
                "query_params": str(request.query_params) or None,
                "client_host": request.client.host if request.client else "unknown",
                "user_agent": request.headers.get("user-agent"),
            }
        logger.info("request_started", method=request.method, path=request.url.path, **details)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            getattr(logger, _completion_level(response.status_code))(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds business identifiers found in the request path to the logging context:

    - subscription_id (/subscriptions/{subscription_id}/...)
    - subscriber_id (/subscriptions/user/{subscriber_id})
    - author_id (/subscriptions/author/{author_id}/..., /subscriptions/stats/{author_id},
      /control/authors/{author_id})
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = [p for p in request.url.path.split("/") if p]

        if len(parts) >= 2 and parts[0] == "subscriptions":
            segment = parts[1]
            if segment in ("author", "stats") and len(parts) >= 3:
                bind_context(author_id=parts[2])
            elif segment == "user" and len(parts) >= 3:
                bind_context(subscriber_id=parts[2])
            elif segment not in _SUBSCRIPTION_ROUTES:
                bind_context(subscription_id=segment)

        if len(parts) >= 3 and parts[:2] == ["control", "authors"]:
            bind_context(author_id=parts[2])

        return await call_next(request)
