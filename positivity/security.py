"""Security headers, CORS, rate limiting and load shedding.

Applied outermost first: proxy headers, security headers, CORS, load
shedding. Rate limits are attached per route through ``rate_limit``.
"""

import asyncio
import logging
import random
from contextlib import suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import (
    MAX_EVENT_LOOP_LAG_MS,
    RATE_LIMIT_PER_IP,
    TRUST_PROXY,
    cors_origins,
    is_development,
)

logger = logging.getLogger(__name__)

# --- Rate limiting ---
# One shared bucket per client IP across every limited route.
# Keyed on request.client, which ProxyHeadersMiddleware rewrites from
# X-Forwarded-For when the peer is a trusted proxy.
limiter = Limiter(key_func=get_remote_address, headers_enabled=True)
rate_limit = limiter.shared_limit(RATE_LIMIT_PER_IP, scope="api")
# Auth routes are left unthrottled in development so sign-in flows can be
# exercised freely.
auth_rate_limit = limiter.shared_limit(
    RATE_LIMIT_PER_IP, scope="api", exempt_when=is_development
)

# --- Security headers ---
_BASE_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

_CSP_DIRECTIVES = {
    "default-src": ["'self'"],
    "base-uri": ["'self'"],
    "font-src": ["'self'", "https://fonts.gstatic.com"],
    "img-src": ["'self'", "data:", "https://authjs.dev"],
    "object-src": ["'none'"],
    "script-src": ["'self'"],
    "style-src": ["'self'", "https://fonts.googleapis.com", "https://authjs.dev"],
    "connect-src": ["'self'", "https://authjs.dev"],
    "form-action": ["'self'", "https://accounts.google.com"],
}


def security_headers(development: bool) -> dict[str, str]:
    headers = dict(_BASE_HEADERS)
    # CSP is disabled in development for hot reload tooling
    if not development:
        headers["Content-Security-Policy"] = "; ".join(
            f"{name} {' '.join(sources)}" for name, sources in _CSP_DIRECTIVES.items()
        )
    return headers


# --- Load shedding ---


class LoadMonitor:
    """Tracks event-loop lag and sheds load when it exceeds ``max_lag_ms``.

    Lag is a dampened average of how late a periodic sleep wakes up. Above
    the threshold a request is rejected with probability proportional to the
    overshoot, so load is shed gradually rather than all at once.
    """

    SMOOTHING = 1 / 3

    def __init__(self, max_lag_ms: int = MAX_EVENT_LOOP_LAG_MS, interval: float = 0.5):
        self.max_lag_ms = max_lag_ms
        self.interval = interval
        self.lag_ms = 0.0
        self._task: Optional[asyncio.Task] = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            await asyncio.sleep(self.interval)
            lag = max(0.0, (loop.time() - started - self.interval) * 1000)
            self.lag_ms = lag * (1 - self.SMOOTHING) + self.lag_ms * self.SMOOTHING

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def too_busy(self) -> bool:
        if self.lag_ms <= self.max_lag_ms:
            return False
        overshoot = (self.lag_ms - self.max_lag_ms) / self.max_lag_ms
        return random.random() < overshoot


load_monitor = LoadMonitor()


def setup_security(app: FastAPI, monitor: LoadMonitor = load_monitor) -> None:
    # Starlette runs the most recently added middleware first

    @app.middleware("http")
    async def shed_load(request: Request, call_next):
        if monitor.too_busy():
            logger.warning(
                "Shedding request to %s (lag %.0fms)", request.url.path, monitor.lag_ms
            )
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Server too busy",
                    "message": "The server is busy. Please try again shortly.",
                },
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    headers = security_headers(is_development())

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in headers.items():
            response.headers.setdefault(name, value)
        return response

    # Outermost, so rate limiting and logging see the forwarded client address
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=TRUST_PROXY)
