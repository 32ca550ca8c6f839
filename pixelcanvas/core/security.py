"""
Pixel Canvas - Security Middleware
Response headers, client keys for throttling, admin token checks.
"""
import hashlib
import secrets
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import RateLimitedError

# Responses under these prefixes carry session state and must not be cached
NO_STORE_PREFIXES = ("/payments", "/admin")


# ============================================================
# SECURITY HEADERS MIDDLEWARE
# ============================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every response"""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        headers = response.headers
        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            headers["Cache-Control"] = "no-store"
        if settings.ENVIRONMENT == "production":
            headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"

        return response


# ============================================================
# CLIENT IDENTITY & INPUT
# ============================================================

def client_address(request: Request) -> str:
    """First hop from the proxy chain, else the socket peer"""
    for header in ("x-forwarded-for", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def client_key(request: Request) -> str:
    """Stable, opaque key for throttling one client"""
    agent = request.headers.get("user-agent", "")
    digest = hashlib.sha256(f"{client_address(request)}|{agent}".encode()).hexdigest()
    return digest[:24]


def generate_nonce(length: int = 16) -> str:
    """Unique nonce for a payment session."""
    return secrets.token_urlsafe(length)[:length]


def clean_text(value: Optional[str], max_length: int) -> str:
    """Drop control characters and cap the length of user supplied text"""
    if not value:
        return ""
    printable = "".join(ch for ch in value if ch.isprintable())
    return printable.strip()[:max_length]


# ============================================================
# RATE LIMITING
# ============================================================

def rate_limit(limit: int, window: int = 60, scope: str = "api", key_func: Callable = None):
    """
    FastAPI dependency allowing `limit` requests per client per window.
    Counters live in Redis so every instance shares them.
    """
    async def dependency(request: Request):
        from pixelcanvas.services.redis_service import redis_service

        key = key_func(request) if key_func else client_key(request)
        if not await redis_service.hit_rate_limit(f"{scope}:{key}", limit, window):
            raise RateLimitedError(
                f"Too many {scope} requests, slow down",
                {"limit": limit, "window_seconds": window},
            )

    return dependency


# ============================================================
# ADMIN
# ============================================================

async def require_admin(x_admin_token: str = Header(default="")):
    """Admin endpoints need the configured token; a blank token disables them"""
    if not settings.ADMIN_TOKEN or not secrets.compare_digest(x_admin_token.encode(), settings.ADMIN_TOKEN.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
