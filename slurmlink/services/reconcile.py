"""Merge authoritative SLURM state into the local job cache.

Remote wins on conflict, except that a terminal job never moves back to
Pending/Running. Writes happen only when a job's state actually changed, so
running a sync twice against an unchanged cluster writes nothing the second
time.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import ValidationError

from slurmlink.errors import (
    ClusterError,
    InputValidationError,
    JobNotFoundError,
    NotConnectedError,
    RemoteFileSystemError,
    SessionExpiredError,
)
from slurmlink.models.jobs import (
    DiscoveryFailure,
    DiscoveryReport,
    JobError,
    JobRecord,
    JobState,
    StateChange,
    SyncReport,
)
from slurmlink.services.job_cache import JobCache
from slurmlink.services.scheduler import SchedulerClient
from slurmlink.services.transfer import TransferEngine
from slurmlink.utils.logging import get_logger
from slurmlink.utils.paths import JobPaths, job_paths
from slurmlink.utils.validation import sanitize_identifier, sanitize_scheduler_job_id

log = get_logger(__name__)


def apply_remote_state(job: JobRecord, state: JobState) -> JobRecord | None:
    """Return the updated job, or None when nothing should be written."""
    if state == job.status:
        return None
    if job.status.is_terminal and not state.is_terminal:
        log.warning(
            "sync.regression_ignored",
            job_id=job.job_id,
            cached=job.status.value,
            remote=state.value,
        )
        return None
    now = datetime.now(timezone.utc)
    update: dict = {"status": state, "updated_at": now}
    if state.is_terminal and job.completed_at is None:
        update["completed_at"] = now
    return job.model_copy(update=update)


class Reconciler:
    """Runs sync cycles: discovery on an empty cache, then a batched status merge."""

    def __init__(
        self,
        scheduler: SchedulerClient,
        transfer: TransferEngine,
        cache: JobCache,
        paths: JobPaths | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._transfer = transfer
        self._cache = cache
        self._paths = paths or job_paths

    async def sync(self, username: str) -> SyncReport:
        report = SyncReport()
        if not self._cache.list():
            report.discovery = await self.discover(username)

        by_scheduler_id: dict[str, JobRecord] = {}
        for job in self._cache.list():
            if not job.status.is_active or not job.slurm_job_id:
                continue
            try:
                by_scheduler_id[sanitize_scheduler_job_id(job.slurm_job_id)] = job
            except InputValidationError as exc:
                log.warning("sync.bad_scheduler_id", job_id=job.job_id, scheduler_job_id=job.slurm_job_id)
                report.errors.append(
                    JobError(job_id=job.job_id, scheduler_job_id=job.slurm_job_id, error=exc.to_info()),
                )
        if by_scheduler_id:
            query = await self._scheduler.query_status(by_scheduler_id)

            # keyed merge: squeue/sacct ordering is not request ordering
            for scheduler_id, record in query.records.items():
                job = by_scheduler_id.get(scheduler_id)
                if job is None:
                    continue
                updated = apply_remote_state(job, record.state)
                if updated is None:
                    continue
                self._cache.upsert(updated)
                report.cache_writes += 1
                report.jobs_updated.append(
                    StateChange(job_id=job.job_id, previous=job.status, current=updated.status),
                )
                if updated.status.is_terminal:
                    error = await self.complete(updated)
                    if error is not None:
                        report.errors.append(
                            JobError(job_id=job.job_id, scheduler_job_id=scheduler_id, error=error.to_info()),
                        )

            for scheduler_id, info in query.errors.items():
                report.errors.append(
                    JobError(
                        job_id=by_scheduler_id[scheduler_id].job_id,
                        scheduler_job_id=scheduler_id,
                        error=info,
                    ),
                )
            for info in query.unattributed_errors:
                report.errors.append(JobError(error=info))
            for scheduler_id, job in by_scheduler_id.items():
                if scheduler_id in query.records or scheduler_id in query.errors:
                    continue
                missing = JobNotFoundError(
                    f"job {scheduler_id} not found in scheduler queue or history",
                    details={"scheduler_job_id": scheduler_id},
                )
                report.errors.append(
                    JobError(job_id=job.job_id, scheduler_job_id=scheduler_id, error=missing.to_info()),
                )

        report.jobs = self._cache.list()
        log.info(
            "sync.completed",
            jobs=len(report.jobs),
            checked=len(by_scheduler_id),
            updated=len(report.jobs_updated),
            errors=len(report.errors),
        )
        return report

    async def complete(self, job: JobRecord) -> ClusterError | None:
        """Copy a finished job's scratch directory back into its project directory.

        Returns the failure instead of raising so one job's copy cannot sink
        the rest of a sync. A dead session still propagates.
        """
        if not job.scratch_dir or not job.project_dir:
            log.info("sync.completion_skipped", job_id=job.job_id, reason="job has no scratch directory")
            return None
        try:
            await self._transfer.mirror_directory(job.scratch_dir, job.project_dir)
        except (SessionExpiredError, NotConnectedError):
            raise
        except ClusterError as exc:
            log.warning("sync.completion_failed", job_id=job.job_id, error_code=exc.code, error=exc.message)
            return exc
        log.info("sync.completed_job_mirrored", job_id=job.job_id, state=job.status.value)
        return None

    async def discover(self, username: str) -> DiscoveryReport:
        """Import jobs from ``<project base>/<job_id>/job_info.json`` on the cluster."""
        report = DiscoveryReport()
        base = self._paths.project_base(username)
        try:
            entries = await self._transfer.list_directory(base)
        except RemoteFileSystemError as exc:
            log.info("sync.discovery_skipped", base=base, reason=exc.message)
            return report

        for entry in entries:
            if not entry.is_directory:
                continue
            try:
                record = await self._load_metadata(entry.name, entry.path)
            except (SessionExpiredError, NotConnectedError):
                raise
            except ClusterError as exc:
                report.failed_imports.append(DiscoveryFailure(directory=entry.path, reason=exc.message))
                continue
            if self._cache.get(record.job_id) is not None:
                continue
            self._cache.upsert(record)
            report.imported_jobs.append(record.job_id)

        log.info(
            "sync.discovery",
            base=base,
            imported=len(report.imported_jobs),
            failed=len(report.failed_imports),
        )
        return report

    async def _load_metadata(self, directory_name: str, directory: str) -> JobRecord:
        sanitize_identifier(directory_name, field="job directory")
        text = await self._transfer.read_text(self._paths.metadata_path(directory))
        try:
            record = JobRecord.model_validate_json(text)
        except ValidationError as exc:
            raise InputValidationError(
                f"invalid job metadata ({exc.error_count()} errors)",
                details={"directory": directory},
            ) from exc
        if record.job_id != directory_name:
            raise InputValidationError(
                f"metadata job id {record.job_id!r} does not match directory",
                details={"directory": directory},
            )
        if record.project_dir is None:
            record = record.model_copy(update={"project_dir": directory})
        return record
