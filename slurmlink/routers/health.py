"""Health-check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from slurmlink import __version__
from slurmlink.auth import require_api_key
from slurmlink.models.responses import HealthResponse, OperationResult
from slurmlink.services.cluster import cluster_service

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def service_health() -> HealthResponse:
    """Basic liveness check (no auth required)."""
    return HealthResponse(status="ok", version=__version__)


@router.get(
    "/connection/status",
    response_model=OperationResult,
    dependencies=[Depends(require_api_key)],
)
async def connection_status() -> OperationResult:
    """Current session state and the last recorded connection error."""
    return cluster_service.connection_status()
