# /convoflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.pymongo import PyMongoIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from convoflow.config.settings import settings
from convoflow.services.db_service import db_service
from convoflow.services.flow_service import close_clients
from convoflow.utils.logging import setup_logging

# Startup and shutdown of the application: logging, error reporting, indexes
# and closing the shared clients.

logger = logging.getLogger(__name__)


def setup_sentry():
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=0.1,
        integrations=[
            FastApiIntegration(),
            HttpxIntegration(),
            RedisIntegration(),
            PyMongoIntegration(),
        ],
        attach_stacktrace=True,
        send_default_pii=False,
    )
    logger.info("Sentry error reporting enabled.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    setup_sentry()

    logger.info("Application starting up...")
    await db_service.create_indexes()
    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await close_clients()
    db_service.close()
