from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmcore.api.envelope import error_response
from crmcore.core.config import get_settings
from crmcore.metrics import observe_rate_limited, route_group_for
from crmcore.security.dependencies import decode_token
from crmcore.security.guards import MUTATING_METHODS


logger = logging.getLogger("app.request")

WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationBudget:
    """Token buckets keyed by (caller, route group), refilled continuously over the window."""

    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def consume(self, caller: str, route_group: str, capacity: int) -> RateDecision:
        if capacity <= 0:
            return RateDecision(allowed=False, remaining=0, retry_after=self.window_seconds)

        now = time.monotonic()
        refill_per_second = capacity / float(self.window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((caller, route_group), _Bucket(float(capacity), now))
            elapsed = max(0.0, now - bucket.refilled_at)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_per_second)
            bucket.refilled_at = now

            if bucket.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - bucket.tokens) / refill_per_second))
                return RateDecision(allowed=False, remaining=0, retry_after=retry_after)

            bucket.tokens -= 1.0
            return RateDecision(allowed=True, remaining=int(bucket.tokens))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_budget = MutationBudget()


def _caller_key(request: Request) -> str:
    # Unverified or missing tokens share one anonymous bucket; the guard chain rejects them anyway.
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return "anonymous"
    payload = decode_token(token.strip())
    subject = payload.get("sub") if payload else None
    return f"user:{subject}" if subject else "anonymous"


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith("/api/v1/")
        ):
            return await call_next(request)

        route_group = route_group_for(path)
        decision = _budget.consume(_caller_key(request), route_group, settings.rate_limit_mutations_per_minute)
        if decision.allowed:
            response = await call_next(request)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            return response

        observe_rate_limited(route_group)
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "method": request.method,
                "path": path,
                "status_code": 429,
                "route_group": route_group,
                "retry_after": decision.retry_after,
            },
        )
        return error_response(
            status_code=429,
            code="RATE_LIMITED",
            message="too many requests",
            details={"route_group": route_group, "retry_after": decision.retry_after},
            headers={"Retry-After": str(decision.retry_after)},
        )


def reset_rate_limiter() -> None:
    _budget.clear()
