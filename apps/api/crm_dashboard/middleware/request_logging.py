from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_dashboard.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crm_dashboard.request")


def _finish(request: Request, status: int, started: float) -> dict[str, object]:
    elapsed = time.perf_counter() - started
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status, duration=elapsed)
    return {
        "method": request.method,
        "path": path,
        "status_code": status,
        "duration_ms": round(elapsed * 1000, 2),
        "user_id": getattr(request.state, "user_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emits one access record and one metrics sample per request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_finish(request, 500, started))
            raise

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=_finish(request, response.status_code, started))
        return response
