import re
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9\-]{1,64}$")
SLOW_REQUEST_MS = 1000


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers for a JSON-only API. HSTS is production only."""

    def __init__(self, app, is_production: bool = False):
        super().__init__(app)
        self.is_production = is_production

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        headers = response.headers
        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["Referrer-Policy"] = "no-referrer"
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        # Booking and payment payloads must never sit in shared caches
        if request.url.path.startswith(("/bookings", "/jobs", "/payments", "/providers", "/admin")):
            headers["Cache-Control"] = "no-store"
        if self.is_production:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id into the structlog context and time the request.

    A client supplied X-Request-ID is reused only when it is short and
    alphanumeric, so it cannot inject into log lines.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        client_id = request.headers.get("X-Request-ID")
        request_id = client_id if client_id and _REQUEST_ID_RE.match(client_id) else str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            duration_ms = (time.monotonic() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
            if duration_ms > SLOW_REQUEST_MS:
                logger.warning(
                    "slow_request",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round(duration_ms, 1),
                    status_code=response.status_code,
                )
            return response
        finally:
            structlog.contextvars.clear_contextvars()
