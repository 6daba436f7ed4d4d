from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import resolve_client_ip
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code == 429:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Times each request, records it in the HTTP metrics and writes one access line.

    Paths are logged as their route template so lead and automation ids never
    end up in log fields or metric labels.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        fields = {
            "method": request.method,
            "path": resolve_http_path_label(request),
            "client_ip": resolve_client_ip(request),
        }
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            logger.error("http.error", exc_info=True, extra=self._finish(fields, started, status_code))
            raise

        logger.log(_level_for(status_code), "http.request", extra=self._finish(fields, started, status_code))
        return response

    @staticmethod
    def _finish(fields: dict[str, object], started: float, status_code: int) -> dict[str, object]:
        duration = time.perf_counter() - started
        observe_http_request(
            method=str(fields["method"]),
            path=str(fields["path"]),
            status=status_code,
            duration=duration,
        )
        return {**fields, "status_code": status_code, "duration_ms": round(duration * 1000, 2)}
