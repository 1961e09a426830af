"""FastAPI application entry-point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from slurmlink import __version__
from slurmlink.config import settings
from slurmlink.routers import connection, files, health, jobs
from slurmlink.services.connection import connection_manager
from slurmlink.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup; close any cluster session on shutdown."""
    setup_logging()
    log.info("app.startup", version=__version__, cluster_host=settings.cluster_host)
    yield
    await connection_manager.close()
    log.info("app.shutdown")


app = FastAPI(
    title="slurmlink",
    description="Local API for SLURM cluster connectivity and job orchestration",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(connection.router)
app.include_router(jobs.router)
app.include_router(files.router)
