"""Connect / disconnect endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from slurmlink.auth import require_api_key
from slurmlink.models.responses import OperationResult
from slurmlink.models.session import ConnectRequest
from slurmlink.services.cluster import cluster_service
from slurmlink.services.vault import SecureCredential

router = APIRouter(tags=["connection"], dependencies=[Depends(require_api_key)])


@router.post("/connect", response_model=OperationResult)
async def connect(req: ConnectRequest) -> OperationResult:
    """Open the cluster session with a password."""
    credential = SecureCredential.from_string(req.password.get_secret_value())
    return await cluster_service.connect(req.username, credential, host=req.host, port=req.port)


@router.post("/disconnect", response_model=OperationResult)
async def disconnect() -> OperationResult:
    return await cluster_service.disconnect()
