import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from chatgate.core.logging import LOGGER_NAME, bind_log_context, latency_bucket_ms
from chatgate.core.metrics import http_requests_total, normalize_path


def _route_label(request) -> str:
    """Route template when matched (/api/conversations/{conversation_id}), else the normalized path."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the request's lifetime, echo it, count and log the request."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid

        start = time.perf_counter()
        with bind_log_context(request_id=rid):
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            response.headers[self.header_name] = rid

            route = _route_label(request)
            http_requests_total.inc(
                labels={"method": request.method, "path": route, "status": str(response.status_code)}
            )
            logging.getLogger(LOGGER_NAME).info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "route": route,
                    "method": request.method,
                    "status": response.status_code,
                    "user_id": getattr(request.state, "user_id", None),
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
        return response
