from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crmcore.api.errors import register_exception_handlers
from crmcore.api.routes import router as api_router
from crmcore.core.config import get_settings
from crmcore.logging import configure_logging
from crmcore.middleware.audit_trail import AuditTrailMiddleware
from crmcore.middleware.correlation_id import CorrelationIdMiddleware
from crmcore.middleware.rate_limit import MutationRateLimitMiddleware
from crmcore.middleware.request_logging import RequestLoggingMiddleware
from crmcore.otel import server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"status": "started"})
    if settings.is_production and settings.jwt_secret == "replace-me":
        logger.warning("system.insecure_jwt_secret", extra={"status": "misconfigured"})
    yield
    logger.info("system.stopped", extra={"status": "stopped"})


app = FastAPI(title="CRM Core API", version="0.1.0", lifespan=lifespan)
app.add_middleware(AuditTrailMiddleware)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

settings = get_settings()
setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
