"""HTTP middleware: request context, rate limiting, access logs and metrics."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from fastapi import Request, status
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from agentsalud.errors import error_response
from agentsalud.logging_utils import (
    _organization_id_ctx_var,
    _request_id_ctx_var,
    _user_id_ctx_var,
    get_current_organization,
)

logger = logging.getLogger(__name__)

REQUEST_COUNTER = Counter(
    "agentsalud_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status", "organization"],
)
REQUEST_LATENCY = Histogram(
    "agentsalud_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)


class SimpleRateLimiter:
    """In-memory fixed window rate limiter keyed by IP and organization."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        async with self._lock:
            count, window_start = self._entries.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                self._entries[key] = (1, now)
                return True
            if count >= self.limit:
                return False
            self._entries[key] = (count + 1, window_start)
            return True

    def reset(self) -> None:
        self._entries.clear()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the request id and organization hint to the logging context."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        tokens = (
            (_request_id_ctx_var, _request_id_ctx_var.set(request_id)),
            (
                _organization_id_ctx_var,
                _organization_id_ctx_var.set(request.headers.get("X-Organization-ID")),
            ),
            (_user_id_ctx_var, _user_id_ctx_var.set(None)),
        )
        try:
            response = await call_next(request)
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject callers that exceed the limiter with a 429 error envelope."""

    def __init__(self, app: ASGIApp, limiter: SimpleRateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.method == "OPTIONS":
            return await call_next(request)

        client_host = request.client.host if request.client else "unknown"
        organization = (
            _organization_id_ctx_var.get()
            or request.headers.get("X-Organization-ID")
            or "anonymous"
        )
        if await self.limiter.allow(f"{client_host}:{organization}"):
            return await call_next(request)

        logger.warning(
            "rate limit exceeded",
            extra={"client_ip": client_host, "organization": organization},
        )
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Rate limit exceeded",
            "RATE_LIMITED",
            {"limit": self.limiter.limit, "windowSeconds": self.limiter.window_seconds},
            headers={"Retry-After": str(self.limiter.window_seconds)},
        )


def _route_path(request: Request) -> str:
    """Route template for metric labels, so ids do not explode cardinality."""

    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def _observe(request: Request, status_code: int, elapsed: float) -> None:
    path = _route_path(request)
    REQUEST_COUNTER.labels(
        method=request.method,
        path=path,
        status=str(status_code),
        organization=get_current_organization(),
    ).inc()
    REQUEST_LATENCY.labels(method=request.method, path=path).observe(elapsed)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured log line and one metric sample per request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            _observe(request, 500, elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            raise

        elapsed = time.perf_counter() - started
        _observe(request, response.status_code, elapsed)
        logger.info(
            "request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )
        return response
