"""Serenity crisis escalation FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from serenity_crisis import __version__
from serenity_crisis.config import settings
from serenity_crisis.database import close_database
from serenity_crisis.logging_config import get_logger, setup_logging
from serenity_crisis.middleware import CorrelationIdMiddleware
from serenity_crisis.routers import crisis_alerts, health, sms_webhooks
from serenity_crisis.services.scheduler import start_scheduler, stop_scheduler
from serenity_crisis.services.sms_gateway import is_simulated

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Note: migrations are run by alembic before uvicorn starts
    logger.info("Serenity crisis engine started")
    if is_simulated():
        logger.warning("No SMS provider configured, messages will be simulated")

    # Deadline sweep; resumes escalations left behind by a previous process
    start_scheduler()

    yield

    logger.info("Shutting down Serenity crisis engine...")
    stop_scheduler()
    await close_database()
    logger.info("Serenity crisis engine shutdown complete")


app = FastAPI(
    title="Serenity Crisis Escalation API",
    description="Tiered crisis alert escalation to a patient's support network",
    version=__version__,
    lifespan=lifespan,
)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(crisis_alerts.router)
app.include_router(sms_webhooks.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Serenity Crisis Escalation API",
        "version": __version__,
        "docs": "/docs",
    }
