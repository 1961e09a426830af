"""Job file upload / download endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from slurmlink.auth import require_api_key
from slurmlink.models.responses import OperationResult
from slurmlink.models.transfer import DownloadRequest, UploadRequest
from slurmlink.services.cluster import cluster_service

router = APIRouter(prefix="/jobs/{job_id}/files", tags=["files"], dependencies=[Depends(require_api_key)])


@router.post("/upload", response_model=OperationResult)
async def upload_files(job_id: str, req: UploadRequest) -> OperationResult:
    """Upload local files into the job's input directory."""
    return await cluster_service.upload(job_id, req.files)


@router.post("/download", response_model=OperationResult)
async def download_file(job_id: str, req: DownloadRequest) -> OperationResult:
    return await cluster_service.download(
        job_id,
        req.remote_name,
        req.local_path,
        from_scratch=req.from_scratch,
    )
