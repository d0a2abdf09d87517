"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import datasets, import_files, import_jobs
from .core.config import settings
from .core.logging_config import configure_logging

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create pipeline tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    from .db.models import create_tables

    try:
        create_tables()
        logger.info("Database tables initialized")
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    yield

    from .api.dependencies import shutdown_pipeline

    shutdown_pipeline()


app = FastAPI(
    title="Event Import Pipeline API",
    version="1.0.0",
    description="Staged import of geolocated, time-stamped CSV and Excel records into versioned datasets",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(import_files.router)
app.include_router(import_jobs.router)
app.include_router(datasets.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Event Import Pipeline API",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
