from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_dashboard.api.routes import router as api_router
from crm_dashboard.auth.seed import ensure_bootstrap_admin
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import Database
from crm_dashboard.core.errors import register_exception_handlers
from crm_dashboard.logging import configure_logging
from crm_dashboard.middleware.correlation_id import CorrelationIdMiddleware
from crm_dashboard.middleware.rate_limit import RateLimitMiddleware
from crm_dashboard.middleware.request_logging import RequestLoggingMiddleware
from crm_dashboard.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_dashboard.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    database = Database(settings.database_url, echo=settings.database_echo)
    app.state.database = database
    if settings.auto_create_schema:
        database.create_all()
    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        with database.session() as session:
            ensure_bootstrap_admin(session, settings)
    logger.info("system.started", extra={"status": "ready"})
    try:
        yield
    finally:
        database.dispose()
        logger.info("system.stopped", extra={"status": "stopped"})


app = FastAPI(title="CRM Dashboard API", version=get_settings().app_version, lifespan=lifespan)
register_exception_handlers(app)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
