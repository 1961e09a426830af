"""Boundary operations for the UI layer.

Every public coroutine returns an ``OperationResult`` envelope: classified
failures become ``ErrorInfo`` instead of propagating. Long operations publish
``TransferProgress`` and ``LogEvent`` items on ``events``.
"""

from __future__ import annotations

import posixpath
from datetime import datetime, timezone
from typing import Any, Awaitable, Iterable

from slurmlink.config import Settings, settings
from slurmlink.errors import (
    ClusterError,
    InternalError,
    InvalidJobStateError,
    RemoteFileSystemError,
    UnknownJobError,
)
from slurmlink.models.jobs import (
    SUBMITTABLE_STATES,
    CancelOutcome,
    JobRecord,
    JobState,
    StatusQueryResult,
)
from slurmlink.models.responses import OperationResult
from slurmlink.models.transfer import BatchTransferResult, FileTransferFailure, FileTransferItem
from slurmlink.services.connection import ConnectionManager, connection_manager
from slurmlink.services.events import EventBus
from slurmlink.services.executor import CommandExecutor
from slurmlink.services.job_cache import JobCache, job_cache
from slurmlink.services.reconcile import Reconciler, apply_remote_state
from slurmlink.services.scheduler import CancelResult, SchedulerClient
from slurmlink.services.transfer import TransferEngine
from slurmlink.services.vault import SecureCredential
from slurmlink.utils.logging import get_logger
from slurmlink.utils.paths import INPUT_FILES_DIR, JobPaths, job_paths
from slurmlink.utils.validation import sanitize_identifier

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ClusterService:
    """Wires the connection, scheduler, transfer and reconciliation pieces together."""

    def __init__(
        self,
        mgr: ConnectionManager | None = None,
        cache: JobCache | None = None,
        cfg: Settings | None = None,
        events: EventBus | None = None,
        paths: JobPaths | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self.manager = mgr or connection_manager
        self.cache = cache if cache is not None else job_cache
        self.events = events or EventBus()
        self.paths = paths or job_paths
        self.executor = CommandExecutor(self.manager, self._cfg)
        self.scheduler = SchedulerClient(self.executor, self._cfg)
        self.transfer = TransferEngine(self.manager, self.executor, self._cfg)
        self.reconciler = Reconciler(self.scheduler, self.transfer, self.cache, self.paths)

    async def _envelope(self, operation: str, coro: Awaitable[Any]) -> OperationResult:
        try:
            data = await coro
        except ClusterError as exc:
            log.warning(f"{operation}.failed", error_code=exc.code, error=exc.message)
            return OperationResult.fail(exc.to_info())
        except Exception as exc:
            log.exception(f"{operation}.crashed")
            return OperationResult.fail(InternalError(f"{operation} failed: {exc}").to_info())
        return OperationResult.ok(data)

    def _job(self, job_id: str) -> JobRecord:
        job = self.cache.get(sanitize_identifier(job_id, field="job_id"))
        if job is None:
            raise UnknownJobError(f"unknown job {job_id!r}", details={"job_id": job_id})
        return job

    # ── connection ────────────────────────────────────────────────────

    async def connect(
        self,
        username: str,
        password: str | SecureCredential,
        *,
        host: str | None = None,
        port: int | None = None,
    ) -> OperationResult:
        credential = password if isinstance(password, SecureCredential) else SecureCredential.from_string(password)
        return await self._envelope(
            "connect",
            self.manager.connect(username, credential, host=host, port=port),
        )

    async def disconnect(self) -> OperationResult:
        return await self._envelope("disconnect", self.manager.disconnect())

    def connection_status(self) -> OperationResult:
        return OperationResult.ok(self.manager.status())

    # ── jobs ──────────────────────────────────────────────────────────

    async def create_job(self, job_id: str, job_name: str = "") -> OperationResult:
        return await self._envelope("create_job", self._create_job(job_id, job_name))

    async def _create_job(self, job_id: str, job_name: str) -> JobRecord:
        job_id = sanitize_identifier(job_id, field="job_id")
        if self.cache.get(job_id) is not None:
            raise InvalidJobStateError(f"job {job_id!r} already exists", details={"job_id": job_id})
        username = self.manager.username
        project_dir = self.paths.project_dir(username, job_id)
        job = JobRecord(
            job_id=job_id,
            job_name=job_name or job_id,
            project_dir=project_dir,
            scratch_dir=self.paths.scratch_dir(username, job_id),
        )
        await self.transfer.mkdir(project_dir, *self.paths.subdirectories(project_dir))
        await self.transfer.write_text(self.paths.metadata_path(project_dir), job.to_metadata_json())
        self.cache.upsert(job)
        self.events.log("create_job", f"Created job directory {project_dir}", job_id=job_id)
        return job

    async def get_status(self, job_ids: Iterable[str]) -> OperationResult:
        return await self._envelope("get_status", self._get_status(list(job_ids)))

    async def _get_status(self, job_ids: list[str]) -> StatusQueryResult:
        """Scheduler view of cached jobs, keyed by local job ID. Read-only."""
        local_by_scheduler: dict[str, str] = {}
        for job_id in job_ids:
            job = self._job(job_id)
            if job.slurm_job_id:
                local_by_scheduler[job.slurm_job_id] = job.job_id
        query = await self.scheduler.query_status(local_by_scheduler, timeout=self._cfg.status_timeout)
        result = StatusQueryResult(unattributed_errors=query.unattributed_errors)
        for scheduler_id, record in query.records.items():
            job_id = local_by_scheduler[scheduler_id]
            result.records[job_id] = record.model_copy(update={"job_id": job_id})
        for scheduler_id, info in query.errors.items():
            result.errors[local_by_scheduler[scheduler_id]] = info
        return result

    async def submit(self, job_id: str) -> OperationResult:
        return await self._envelope("submit", self._submit(job_id))

    async def _submit(self, job_id: str) -> JobRecord:
        job = self._job(job_id)
        if job.status not in SUBMITTABLE_STATES:
            raise InvalidJobStateError(
                f"job in state {job.status.value} cannot be submitted",
                details={"job_id": job.job_id, "state": job.status.value},
            )
        username = self.manager.username
        project_dir = job.project_dir or self.paths.project_dir(username, job.job_id)
        scratch_dir = job.scratch_dir or self.paths.scratch_dir(username, job.job_id)

        self.events.log("submit", "Copying job files to scratch", job_id=job.job_id)
        await self.transfer.mirror_directory(project_dir, scratch_dir)

        self.events.log("submit", "Submitting job to SLURM", job_id=job.job_id)
        try:
            scheduler_job_id = await self.scheduler.submit(scratch_dir)
        except ClusterError as exc:
            self.cache.upsert(
                job.model_copy(update={"status": JobState.failed, "error_info": exc.message, "updated_at": _now()}),
            )
            raise

        now = _now()
        submitted = job.model_copy(update={
            "status": JobState.pending,
            "slurm_job_id": scheduler_job_id,
            "submitted_at": now,
            "updated_at": now,
            "completed_at": None,
            "project_dir": project_dir,
            "scratch_dir": scratch_dir,
            "error_info": None,
        })
        self.cache.upsert(submitted)
        try:
            await self.transfer.write_text(self.paths.metadata_path(project_dir), submitted.to_metadata_json())
        except ClusterError as exc:
            # the job is queued either way; discovery just sees older metadata
            log.warning("submit.metadata_write_failed", job_id=job.job_id, error_code=exc.code)
        self.events.log(
            "submit",
            f"Submitted as SLURM job {scheduler_job_id}",
            job_id=job.job_id,
            scheduler_job_id=scheduler_job_id,
        )
        return submitted

    async def cancel(self, job_id: str) -> OperationResult:
        return await self._envelope("cancel", self._cancel(job_id))

    async def _cancel(self, job_id: str) -> CancelOutcome:
        job = self._job(job_id)
        if not job.slurm_job_id or not job.status.is_active:
            return CancelOutcome(
                job_id=job.job_id,
                scheduler_job_id=job.slurm_job_id,
                cancelled=False,
                state=job.status,
                message=f"job is {job.status.value}; nothing to cancel",
            )
        outcome = await self.scheduler.cancel(job.slurm_job_id, job.status)
        if outcome is CancelResult.already_finished:
            return await self._settle_finished(job)
        now = _now()
        cancelled = job.model_copy(update={"status": JobState.cancelled, "updated_at": now, "completed_at": now})
        self.cache.upsert(cancelled)
        self.events.log("cancel", "Job cancelled", job_id=job.job_id, scheduler_job_id=job.slurm_job_id)
        return CancelOutcome(
            job_id=job.job_id,
            scheduler_job_id=job.slurm_job_id,
            cancelled=True,
            state=cancelled.status,
        )

    async def _settle_finished(self, job: JobRecord) -> CancelOutcome:
        """The job ended before scancel reached it: record what SLURM says happened."""
        query = await self.scheduler.query_status([job.slurm_job_id], timeout=self._cfg.status_timeout)
        record = query.records.get(job.slurm_job_id)
        state = job.status
        if record is not None:
            updated = apply_remote_state(job, record.state)
            if updated is not None:
                self.cache.upsert(updated)
                state = updated.status
        self.events.log(
            "cancel",
            f"Job already finished as {state.value}",
            job_id=job.job_id,
            scheduler_job_id=job.slurm_job_id,
        )
        return CancelOutcome(
            job_id=job.job_id,
            scheduler_job_id=job.slurm_job_id,
            cancelled=False,
            state=state,
            message="job had already finished on the cluster",
        )

    async def delete_job(self, job_id: str, delete_remote: bool = False) -> OperationResult:
        return await self._envelope("delete_job", self._delete_job(job_id, delete_remote))

    async def _delete_job(self, job_id: str, delete_remote: bool) -> str:
        """Cancel if still queued, optionally remove its directories, then forget it."""
        job = self._job(job_id)
        targets: list[str] = []
        if delete_remote:
            targets = [self.paths.deletable_job_dir(d) for d in (job.project_dir, job.scratch_dir) if d]

        if job.slurm_job_id and job.status.is_active:
            self.events.log("delete_job", "Cancelling SLURM job", job_id=job.job_id)
            await self.scheduler.cancel(job.slurm_job_id, job.status)

        for directory in targets:
            await self.transfer.remove_directory(directory)
            self.events.log("delete_job", f"Deleted {directory}", job_id=job.job_id)

        if not self.cache.delete(job.job_id):
            raise UnknownJobError(f"unknown job {job.job_id!r}", details={"job_id": job.job_id})
        self.events.log("delete_job", "Job deleted", job_id=job.job_id, remote=delete_remote)
        return job.job_id

    async def sync(self) -> OperationResult:
        return await self._envelope("sync", self._sync())

    async def _sync(self):
        username = self.manager.username
        self.events.log("sync", "Synchronizing job status")
        report = await self.reconciler.sync(username)
        self.events.log(
            "sync",
            f"Updated {len(report.jobs_updated)} of {len(report.jobs)} jobs",
            errors=len(report.errors),
        )
        return report

    async def job_logs(self, job_id: str) -> OperationResult:
        return await self._envelope("job_logs", self._job_logs(job_id))

    async def _job_logs(self, job_id: str) -> dict[str, str]:
        """SLURM stdout/stderr files, ``<job_name>_<slurm id>.out/.err`` in scratch."""
        job = self._job(job_id)
        if not job.slurm_job_id or not job.scratch_dir:
            raise InvalidJobStateError("job has not been submitted", details={"job_id": job.job_id})
        logs: dict[str, str] = {}
        stem = f"{sanitize_identifier(job.job_name or job.job_id, field='job_name')}_{job.slurm_job_id}"
        for key, suffix in (("stdout", ".out"), ("stderr", ".err")):
            path = self.paths.job_file(job.scratch_dir, stem + suffix)
            try:
                logs[key] = await self.transfer.read_text(path)
            except RemoteFileSystemError:
                logs[key] = ""
        return logs

    # ── files ─────────────────────────────────────────────────────────

    async def upload(self, job_id: str, files: list[FileTransferItem]) -> OperationResult:
        return await self._envelope("upload", self._upload(job_id, files))

    async def _upload(self, job_id: str, files: list[FileTransferItem]) -> BatchTransferResult:
        job = self._job(job_id)
        project_dir = job.project_dir or self.paths.project_dir(self.manager.username, job.job_id)
        await self.transfer.mkdir(posixpath.join(project_dir, INPUT_FILES_DIR))

        rejected: list[FileTransferFailure] = []
        pairs: list[tuple[str, str]] = []
        for item in files:
            try:
                pairs.append((item.local_path, self.paths.input_path(project_dir, item.remote_name)))
            except ClusterError as exc:
                rejected.append(
                    FileTransferFailure(local_path=item.local_path, remote_path=item.remote_name, error=exc.to_info()),
                )

        batch = await self.transfer.upload_many(pairs, on_progress=self.events.publish)
        batch.failed = rejected + batch.failed
        self.events.log(
            "upload",
            f"Uploaded {len(batch.transferred)} of {len(files)} files",
            job_id=job.job_id,
        )
        return batch

    async def download(
        self,
        job_id: str,
        remote_name: str,
        local_path: str,
        *,
        from_scratch: bool = False,
    ) -> OperationResult:
        return await self._envelope("download", self._download(job_id, remote_name, local_path, from_scratch))

    async def _download(self, job_id: str, remote_name: str, local_path: str, from_scratch: bool):
        job = self._job(job_id)
        base = job.scratch_dir if from_scratch else job.project_dir
        if not base:
            raise InvalidJobStateError(
                "job has no scratch directory yet" if from_scratch else "job has no project directory",
                details={"job_id": job.job_id},
            )
        remote_path = self.paths.job_file(base, remote_name)
        return await self.transfer.download(remote_path, local_path, on_progress=self.events.publish)


# ── Singleton instance ────────────────────────────────────────────────────

cluster_service = ClusterService()
