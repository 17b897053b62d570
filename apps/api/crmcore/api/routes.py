from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from crmcore.api.analytics import export_router, router as analytics_router
from crmcore.api.audit import router as audit_router
from crmcore.api.comments import router as comments_router
from crmcore.api.companies import contacts_router, follow_ups_router, router as companies_router
from crmcore.api.envelope import ok
from crmcore.api.files import router as files_router
from crmcore.api.notifications import router as notifications_router
from crmcore.api.requests import deletion_router, profile_router
from crmcore.api.search import router as search_router
from crmcore.api.tasks import router as tasks_router, tickets_router
from crmcore.api.users import router as users_router
from crmcore.core.config import get_settings
from crmcore.metrics import generate_metrics_payload, metrics_content_type
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.errors import NotFoundError
from crmcore.security.guards import require_roles
from crmcore.security.permissions import Role, permission_table

router = APIRouter()
router.include_router(companies_router)
router.include_router(contacts_router)
router.include_router(follow_ups_router)
router.include_router(deletion_router)
router.include_router(tasks_router)
router.include_router(tickets_router)
router.include_router(users_router)
router.include_router(profile_router)
router.include_router(comments_router)
router.include_router(notifications_router)
router.include_router(files_router)
router.include_router(audit_router)
router.include_router(analytics_router)
router.include_router(export_router)
router.include_router(search_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/api/v1/permissions", tags=["auth"])
def permissions(actor: Actor = Depends(route_guard())) -> dict[str, Any]:
    return ok(
        {
            "role": actor.role.value,
            "permissions": actor.permissions.as_dict(),
            "table": permission_table(),
        }
    )


@router.get("/metrics", tags=["system"])
def metrics(actor: Actor = Depends(route_guard(require_roles([Role.ADMIN], name="require_admin")))) -> Response:
    if not get_settings().metrics_enabled:
        raise NotFoundError("not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
