"""
Security headers middleware.
Adds standard security headers to every response and keeps history payloads
out of shared caches.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.config import get_settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        settings = getattr(request.app.state, "settings", None) or get_settings()

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        path = request.url.path
        if path in (f"{settings.api_v1_prefix}/docs", f"{settings.api_v1_prefix}/redoc"):
            csp_directives = [
                "default-src 'self'",
                "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
                "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
                "img-src 'self' data:",
                "frame-ancestors 'none'",
            ]
        else:
            csp_directives = ["default-src 'none'", "frame-ancestors 'none'"]
        response.headers["Content-Security-Policy"] = "; ".join(csp_directives)

        # Revealed history may contain decrypted personal data.
        if path.startswith(f"{settings.api_v1_prefix}/history"):
            response.headers["Cache-Control"] = "no-store"

        if settings.environment in ("production", "staging"):
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"

        return response
