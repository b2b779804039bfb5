from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # JSON only; nothing here should render in a frame or a browser tab
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Refund and order data must not be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"

        return response


def setup_security_middleware(app: FastAPI, allowed_hosts: list[str] = None):
    """Configure all security middleware for the application."""

    app.add_middleware(SecurityHeadersMiddleware)

    # Add trusted host validation (prevents host header attacks)
    if allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)
