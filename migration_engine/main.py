"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the migration router.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import shutdown_import_service
from .api.routers import migrations
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, settings.log_batch_level or None)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the engine tables on startup and stop background work on shutdown."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        from .db.session import init_db

        try:
            init_db()
            logger.info("Migration tables ready")
        except Exception as e:
            logger.error(f"Failed to initialize database tables: {e}")
            raise

    yield

    shutdown_import_service()


app = FastAPI(
    title="Migration Engine API",
    version="0.1.0",
    description="Imports bulk exports from external case-management systems into a configurable target schema",
    lifespan=lifespan,
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(migrations.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Migration Engine API",
        "version": "0.1.0",
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "migration-engine",
    }
