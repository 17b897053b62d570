from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from crmcore.context import get_correlation_id
from crmcore.core.config import get_settings


@dataclass
class ErrorEnvelope:
    success: bool
    error: str
    code: str
    details: Any
    timestamp: str
    request_id: str | None


@dataclass(frozen=True)
class PageParams:
    page: int
    limit: int


def page_params(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> PageParams:
    settings = get_settings()
    size = min(limit or settings.default_page_size, settings.max_page_size)
    return PageParams(page=page, limit=size)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    body.update(extra)
    body["timestamp"] = _timestamp()
    body["request_id"] = get_correlation_id()
    return body


def paginated(items: list[Any], total: int, params: PageParams) -> dict[str, Any]:
    return ok(
        items,
        pagination={
            "page": params.page,
            "limit": params.limit,
            "total": total,
            "pages": math.ceil(total / params.limit) if total else 0,
        },
    )


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        success=False,
        error=message,
        code=code,
        details=details,
        timestamp=_timestamp(),
        request_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.__dict__), headers=headers)
