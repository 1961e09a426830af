"""Job lifecycle endpoints: create, submit, cancel, delete, status, sync."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from slurmlink.auth import require_api_key
from slurmlink.models.jobs import JobCreateRequest, JobStatusRequest
from slurmlink.models.responses import OperationResult
from slurmlink.services.cluster import cluster_service

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_api_key)])


@router.get("", response_model=OperationResult)
async def list_jobs() -> OperationResult:
    """Jobs currently held in the local cache."""
    return OperationResult.ok(cluster_service.cache.list())


@router.post("", response_model=OperationResult)
async def create_job(req: JobCreateRequest) -> OperationResult:
    return await cluster_service.create_job(req.job_id, req.job_name)


@router.post("/status", response_model=OperationResult)
async def job_status(req: JobStatusRequest) -> OperationResult:
    return await cluster_service.get_status(req.job_ids)


@router.post("/sync", response_model=OperationResult)
async def sync_jobs() -> OperationResult:
    """Reconcile the cache with SLURM (discovers jobs on first run)."""
    return await cluster_service.sync()


@router.post("/{job_id}/submit", response_model=OperationResult)
async def submit_job(job_id: str) -> OperationResult:
    return await cluster_service.submit(job_id)


@router.post("/{job_id}/cancel", response_model=OperationResult)
async def cancel_job(job_id: str) -> OperationResult:
    return await cluster_service.cancel(job_id)


@router.get("/{job_id}/logs", response_model=OperationResult)
async def job_logs(job_id: str) -> OperationResult:
    return await cluster_service.job_logs(job_id)


@router.delete("/{job_id}", response_model=OperationResult)
async def delete_job(job_id: str, delete_remote: bool = False) -> OperationResult:
    """Forget a job; ``?delete_remote=true`` also removes its cluster directories."""
    return await cluster_service.delete_job(job_id, delete_remote)
