from __future__ import annotations

import math
import re
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import resolve_client_ip


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, client_key: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (client_key, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()

_SUBMISSION_PATH = re.compile(r"^/api/projects/(?P<project_id>[^/]+)/submissions/?$")
_CAPTURE_PATH = re.compile(r"^/api/leads/capture/?$")


class PublicIntakeRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        route_group = _resolve_route_group(path) if request.method.upper() == "POST" else None
        if route_group is None:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            client_key=resolve_client_ip(request),
            route_group=route_group,
            capacity=settings.rate_limit_public_submissions_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str | None:
    """Public intake is limited per client and per form, capture posts share one bucket."""
    match = _SUBMISSION_PATH.match(path)
    if match is not None:
        return f"submissions:{match.group('project_id')}"
    if _CAPTURE_PATH.match(path):
        return "capture"
    return None


def reset_rate_limiter() -> None:
    _limiter.clear()
