"""File transfer and event stream models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from slurmlink.models.responses import ErrorInfo


class TransferProgress(BaseModel):
    """Emitted after every chunk of an upload or download."""

    kind: Literal["transfer_progress"] = "transfer_progress"
    direction: Literal["upload", "download"]
    file_name: str
    bytes_transferred: int
    total_bytes: int
    percentage: float
    transfer_rate: float = 0.0


class LogEvent(BaseModel):
    """Human-readable progress line for long operations (submit, sync)."""

    kind: Literal["log"] = "log"
    operation: str
    message: str
    level: str = "info"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = Field(default_factory=dict)


class TransferResult(BaseModel):
    local_path: str
    remote_path: str
    bytes_transferred: int
    chunks: int
    elapsed_time: float = 0.0


class FileTransferItem(BaseModel):
    local_path: str
    remote_name: str


class FileTransferFailure(BaseModel):
    local_path: str
    remote_path: str
    error: ErrorInfo


class BatchTransferResult(BaseModel):
    """Per-file outcome of a multi-file upload."""

    transferred: list[TransferResult] = Field(default_factory=list)
    failed: list[FileTransferFailure] = Field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class UploadRequest(BaseModel):
    """Request body for POST /jobs/{job_id}/files/upload."""

    files: list[FileTransferItem]


class DownloadRequest(BaseModel):
    """Request body for POST /jobs/{job_id}/files/download."""

    remote_name: str
    local_path: str
    from_scratch: bool = False


class RemoteEntry(BaseModel):
    name: str
    path: str
    size: int = 0
    is_directory: bool = False
    modified_at: Optional[datetime] = None
