"""
Lendflow workflow engine - rule-triggered outbound webhooks.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from lendflow.config import get_settings
from lendflow.api.router import api_router
from lendflow.database import dispose_engine
from lendflow.services.tenancy import InvalidTenantError
from lendflow.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("lendflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Lendflow starting up (env=%s)", settings.app_env)

    if not settings.admin_api_key:
        logger.warning(
            "ADMIN_API_KEY not set - admin endpoints accept any caller. "
            "Set it (or front the API with the host app's auth) for production."
        )

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.dispatch_worker_enabled:
        from lendflow.workers.webhook_dispatch import run_webhook_dispatcher
        worker_tasks.append(asyncio.create_task(run_webhook_dispatcher()))
        logger.info("Webhook dispatch worker started")
    else:
        logger.info("Webhook dispatch worker disabled (DISPATCH_WORKER_ENABLED=false)")

    yield

    logger.info("Lendflow shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)
    await dispose_engine()
    logger.info("Lendflow shutdown complete")


async def _invalid_tenant_handler(request: Request, exc: InvalidTenantError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Lendflow Workflow Engine",
        description="Workflow triggers and signed outbound webhooks",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.add_exception_handler(InvalidTenantError, _invalid_tenant_handler)
    application.include_router(api_router)

    return application


app = create_app()
