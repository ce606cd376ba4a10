"""
Request logging middleware.
Logs one structured line per request with timing and counts it in metrics.
NEVER logs: request bodies (repository URLs may embed tokens), sensitive headers.
"""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from deployer.core.metrics import metrics

logger = logging.getLogger("deployer.request")

REQUEST_ID_HEADER = "X-Request-Id"

# Pollers hit these constantly
QUIET_PATHS = {"/health", "/api/deploy/status", "/api/deploy/logs"}


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _count(status_code: int) -> None:
    metrics.inc("requests_total")
    status_class = status_code // 100
    if status_class in (2, 4, 5):
        metrics.inc(f"requests_{status_class}xx")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Propagates (or generates) the request id, echoes it back in the
    response headers, and logs method, path, status and duration.
    Successful polling requests are logged at debug level only.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = int((time.perf_counter() - started) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        _count(response.status_code)

        quiet = request.url.path in QUIET_PATHS and response.status_code < 400
        logger.log(
            logging.DEBUG if quiet else logging.INFO,
            "request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": _client_ip(request),
            },
        )
        return response
