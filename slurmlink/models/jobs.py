"""Job state, scheduler status records, and reconciliation reports."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from slurmlink.models.responses import ErrorInfo


class JobState(str, Enum):
    created = "CREATED"
    pending = "PENDING"
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


TERMINAL_STATES = frozenset({JobState.completed, JobState.failed, JobState.cancelled})
ACTIVE_STATES = frozenset({JobState.pending, JobState.running})
SUBMITTABLE_STATES = frozenset({JobState.created, JobState.failed})


class JobStatusRecord(BaseModel):
    """One parsed line of squeue or sacct output.

    ``job_id`` is the scheduler's ID as parsed. ``ClusterService.get_status``
    rebinds it to the local job ID; the sync merge keys by scheduler ID and
    leaves it alone.
    """

    job_id: str
    scheduler_job_id: str
    name: str = ""
    state: JobState
    raw_state: str = ""
    source: str = "squeue"
    time_used: Optional[str] = None
    time_left: Optional[str] = None
    node_count: Optional[int] = None
    cpu_count: Optional[int] = None
    memory: Optional[str] = None
    partition: Optional[str] = None
    exit_code: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    elapsed: Optional[str] = None
    working_directory: Optional[str] = None


class JobRecord(BaseModel):
    """Cached job entry; also the shape of ``job_info.json`` on the cluster."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    job_name: str = ""
    status: JobState = JobState.created
    slurm_job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    project_dir: Optional[str] = None
    scratch_dir: Optional[str] = None
    error_info: Optional[str] = None

    def to_metadata_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class StatusQueryResult(BaseModel):
    """Outcome of a two-stage status query, keyed by scheduler job ID."""

    records: dict[str, JobStatusRecord] = Field(default_factory=dict)
    errors: dict[str, ErrorInfo] = Field(default_factory=dict)
    unattributed_errors: list[ErrorInfo] = Field(default_factory=list)


class CancelOutcome(BaseModel):
    job_id: str
    scheduler_job_id: Optional[str] = None
    cancelled: bool
    state: JobState
    message: str = ""


class JobError(BaseModel):
    job_id: Optional[str] = None
    scheduler_job_id: Optional[str] = None
    error: ErrorInfo


class StateChange(BaseModel):
    job_id: str
    previous: JobState
    current: JobState


class DiscoveryFailure(BaseModel):
    directory: str
    reason: str


class DiscoveryReport(BaseModel):
    imported_jobs: list[str] = Field(default_factory=list)
    failed_imports: list[DiscoveryFailure] = Field(default_factory=list)


class SyncReport(BaseModel):
    jobs: list[JobRecord] = Field(default_factory=list)
    jobs_updated: list[StateChange] = Field(default_factory=list)
    cache_writes: int = 0
    errors: list[JobError] = Field(default_factory=list)
    discovery: Optional[DiscoveryReport] = None


class JobStatusRequest(BaseModel):
    """Request body for POST /jobs/status."""

    job_ids: list[str]


class JobCreateRequest(BaseModel):
    """Request body for POST /jobs."""

    job_id: str
    job_name: str = ""
