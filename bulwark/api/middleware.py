"""Abuse guard middleware for inbound requests."""

import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..resilience.errors import Severity
from ..runtime import Runtime
from ..security.rate_limiter import SecurityViolation, ViolationType
from ..security.validation import XSSDetector

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60
ADMIN_PREFIX = "/security"

# Checked in order after X-Forwarded-For
_CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-client-ip")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(), usb=()",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}

# Swagger UI and ReDoc load their assets from a CDN
_DOCS_PREFIXES = ("/docs", "/redoc")


def get_client_identifier(request: Request) -> str:
    """Best guess at the originating client address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for header in _CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.strip()

    return request.client.host if request.client else "unknown"


class AbuseGuardMiddleware(BaseHTTPMiddleware):
    """Rejects suspicious clients (403), rate limited clients (429) and
    query strings carrying script injection (400).

    Paths under /security get the stricter admin limit. Responses from the
    application carry SECURITY_HEADERS.
    """

    def __init__(
        self,
        app,
        runtime: Runtime,
        exclude_paths: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self.runtime = runtime
        self.exclude_paths = exclude_paths if exclude_paths is not None else ["/metrics"]
        self.xss_detector = XSSDetector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request through the abuse guard."""
        path = request.url.path
        if any(path.startswith(p) for p in self.exclude_paths):
            return self._secure(path, await call_next(request))

        settings = self.runtime.settings
        guard = self.runtime.guard
        client_id = get_client_identifier(request)
        user_agent = request.headers.get("user-agent")

        if settings.abuse_detection_enabled and guard.detect_suspicious_activity(client_id, user_agent):
            guard.report_violation(
                SecurityViolation(
                    type=ViolationType.DDOS,
                    severity=Severity.CRITICAL,
                    identifier=client_id,
                    timestamp=self.runtime.clock(),
                    user_agent=user_agent,
                    url=str(request.url),
                    details={"reason": "Suspicious activity pattern detected"},
                ),
                method=request.method,
            )
            return JSONResponse(
                status_code=403,
                content={"error": "Access denied due to suspicious activity"},
            )

        max_requests = (
            settings.admin_rate_limit_max_requests
            if path.startswith(ADMIN_PREFIX)
            else settings.rate_limit_max_requests
        )
        decision = guard.is_allowed(client_id, max_requests, settings.rate_limit_window)

        if not decision.allowed:
            if decision.violation is not None:
                decision.violation.url = str(request.url)
                decision.violation.user_agent = user_agent
                guard.report_violation(decision.violation, method=request.method)
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retryAfter": RETRY_AFTER_SECONDS},
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )

        query = request.url.query
        if settings.xss_protection_enabled and query and not self.xss_detector.is_safe(query):
            guard.report_violation(
                SecurityViolation(
                    type=ViolationType.XSS,
                    severity=Severity.HIGH,
                    identifier=client_id,
                    timestamp=self.runtime.clock(),
                    user_agent=user_agent,
                    url=str(request.url),
                    details={"queryString": query, "detectedIn": "query_parameters"},
                ),
                method=request.method,
            )
            return JSONResponse(status_code=400, content={"error": "Malicious content detected"})

        return self._secure(path, await call_next(request))

    def _secure(self, path: str, response: Response) -> Response:
        if self.runtime.settings.security_headers_enabled and not path.startswith(_DOCS_PREFIXES):
            for name, value in SECURITY_HEADERS.items():
                response.headers[name] = value
        return response
