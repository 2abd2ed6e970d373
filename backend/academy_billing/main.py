from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from academy_billing.api.routes import (
    academies,
    charges,
    contacts,
    freezes,
    health,
    jobs,
    payment_methods,
    subscriptions,
    webhooks,
)
from academy_billing.core.config import settings
from academy_billing.core.logging_setup import logger
from academy_billing.db.session import init_db


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    init_db()
    scheduler = None
    if settings.billing_scheduler_enabled:
        from academy_billing.services.billing_scheduler import start_billing_scheduler

        scheduler = start_billing_scheduler()
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


def _normalize_origin(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().rstrip("/")
    return cleaned or None


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    public_front_base = settings.resolved_public_app_url()
    extra_origins = [_normalize_origin(public_front_base)] if public_front_base else []
    origins: list[str] = []
    for item in settings.allowed_origins + extra_origins:
        normalized = _normalize_origin(item)
        if normalized and normalized not in origins:
            origins.append(normalized)
    logger.info("CORS origins: %s", origins)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(health.router, prefix="/health")
    application.include_router(academies.router, prefix=settings.api_v1_str)
    application.include_router(contacts.router, prefix=settings.api_v1_str)
    application.include_router(subscriptions.router, prefix=settings.api_v1_str)
    application.include_router(freezes.router, prefix=settings.api_v1_str)
    application.include_router(charges.router, prefix=settings.api_v1_str)
    application.include_router(payment_methods.router, prefix=settings.api_v1_str)
    application.include_router(webhooks.router, prefix=settings.api_v1_str)
    application.include_router(jobs.router, prefix=settings.api_v1_str)

    @application.get("/")
    def root():
        return {"service": settings.project_name}

    logger.info("%s ready", settings.project_name)
    return application


app = create_app()
