from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmcore.context import bind_actor, reset_actor
from crmcore.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

_QUIET_PATHS = frozenset({"/health", "/metrics"})


@contextmanager
def _actor_bound(request: Request) -> Iterator[None]:
    # The actor is resolved inside the route task; rebind it here so the record factory stamps it.
    actor = getattr(request.state, "actor", None)
    if actor is None:
        yield
        return
    token = bind_actor(actor.id_str, actor.role.value)
    try:
        yield
    finally:
        reset_actor(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            with _actor_bound(request):
                logger.error(
                    "http.error",
                    exc_info=True,
                    extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
                )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path = resolve_http_path_label(request)
        status_code = response.status_code
        observe_http_request(method=method, path=path, status=status_code, duration=duration_ms / 1000)

        if request.url.path in _QUIET_PATHS:
            level = logging.DEBUG
        elif status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        with _actor_bound(request):
            logger.log(
                level,
                "http.request",
                extra={"method": method, "path": path, "status_code": status_code, "duration_ms": duration_ms},
            )
        return response
