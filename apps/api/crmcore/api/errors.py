from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmcore.api.envelope import error_response
from crmcore.core.config import get_settings
from crmcore.core.database import is_query_timeout
from crmcore.security.errors import AppError, QueryTimeoutError


logger = logging.getLogger("app.request")

_HTTP_CODES = {
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    429: "RATE_LIMITED",
}


def _validation_triples(exc: RequestValidationError) -> list[dict[str, str]]:
    triples: list[dict[str, str]] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"}]
        triples.append(
            {
                "field": ".".join(location) or "body",
                "message": str(error.get("msg", "invalid value")),
                "code": str(error.get("type", "invalid")),
            }
        )
    return triples


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"path": request.url.path, "error": exc.message})
    return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="VALIDATION_ERROR",
        message="validation failed",
        details=_validation_triples(exc),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=_HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    if is_query_timeout(exc):
        logger.warning("request.query_timeout", extra={"path": request.url.path, "method": request.method})
        timeout = QueryTimeoutError()
        return error_response(status_code=timeout.status_code, code=timeout.code, message=timeout.message)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "request.unhandled_error",
        extra={"path": request.url.path, "method": request.method, "error": str(exc)[:500]},
    )
    message = "internal server error" if get_settings().is_production else str(exc) or "internal server error"
    return error_response(status_code=500, code="INTERNAL_ERROR", message=message)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(OperationalError, operational_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
