from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, NamedTuple

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_dashboard.core.config import Settings, get_settings
from crm_dashboard.core.errors import error_response


AUTH_LIMITED_PATHS = frozenset({"/api/auth/login", "/api/auth/register", "/api/auth/change-password"})
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class Budget(NamedTuple):
    key: tuple[str, str]
    limit: int
    window_seconds: int


class SlidingWindowLimiter:
    """Keeps the hit timestamps of each key inside its window."""

    sweep_interval_seconds = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[tuple[str, str], tuple[int, deque[float]]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, budget: Budget) -> int | None:
        """Record a hit and return None, or return the seconds to wait when the budget is spent."""
        if budget.limit <= 0:
            return budget.window_seconds

        now = self._clock()
        horizon = now - budget.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.sweep_interval_seconds:
                self._sweep(now)
            _, hits = self._hits.setdefault(budget.key, (budget.window_seconds, deque()))
            while hits and hits[0] <= horizon:
                hits.popleft()
            if len(hits) >= budget.limit:
                return max(1, math.ceil(hits[0] - horizon))
            hits.append(now)
            return None

    def _sweep(self, now: float) -> None:
        # A key whose newest hit has left its window holds no budget state.
        expired = [key for key, (window, hits) in self._hits.items() if not hits or hits[-1] <= now - window]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


_limiter = SlidingWindowLimiter()


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else "unknown"


def _token_subject(request: Request, settings: Settings) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return "anonymous"
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"
    return str(payload.get("sub") or "anonymous")


def resolve_budget(request: Request, settings: Settings) -> Budget | None:
    """Credential endpoints are budgeted per client address, other /api writes per user and resource."""
    path = request.url.path.rstrip("/") or "/"
    if request.method.upper() not in MUTATING_METHODS or not path.startswith("/api/"):
        return None

    if path in AUTH_LIMITED_PATHS:
        return Budget(
            key=(_client_address(request), path),
            limit=settings.rate_limit_auth_attempts,
            window_seconds=settings.rate_limit_auth_window_seconds,
        )
    if path.startswith("/api/auth/"):
        return None

    resource = path.split("/")[2]
    return Budget(
        key=(_token_subject(request, settings), resource),
        limit=settings.rate_limit_mutations_per_minute,
        window_seconds=60,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        budget = None if settings.rate_limit_disabled else resolve_budget(request, settings)
        if budget is None:
            return await call_next(request)

        retry_after = _limiter.hit(budget)
        if retry_after is None:
            return await call_next(request)

        response = error_response(
            request,
            status_code=429,
            code="rate_limited",
            message="Too many requests",
            details={"retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
