# /chatflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from chatflow.config.settings import settings
from chatflow.services.runtime import build_runtime
from chatflow.utils.logging import setup_logging

# Application lifespan: builds the runtime for the configured backend, starts
# the inbound and deferred workers, and tears everything down on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application starting up...")

    # Tests may install a prepared runtime before the app starts.
    runtime = getattr(app.state, "runtime", None) or build_runtime(settings)
    app.state.runtime = runtime
    await runtime.start(workers=settings.environment != "test")

    logger.info("Application startup complete. Ready to accept requests.")

    yield

    logger.info("Application shutting down...")
    await runtime.stop()
    app.state.runtime = None
