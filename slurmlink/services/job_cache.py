"""Local job cache boundary and the bundled in-memory store."""

from __future__ import annotations

from typing import Optional, Protocol

from slurmlink.models.jobs import JobRecord
from slurmlink.utils.logging import get_logger

log = get_logger(__name__)


class JobCache(Protocol):
    """What reconciliation needs from whatever persists jobs locally."""

    def get(self, job_id: str) -> Optional[JobRecord]: ...

    def list(self) -> list[JobRecord]: ...

    def upsert(self, job: JobRecord) -> None: ...

    def delete(self, job_id: str) -> bool: ...


class InMemoryJobCache:
    """Dict-backed cache keyed by job_id. ``writes`` counts upserts and deletes."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self.writes = 0

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def list(self) -> list[JobRecord]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def upsert(self, job: JobRecord) -> None:
        self._jobs[job.job_id] = job
        self.writes += 1
        log.debug("cache.upsert", job_id=job.job_id, status=job.status.value)

    def delete(self, job_id: str) -> bool:
        removed = self._jobs.pop(job_id, None) is not None
        if removed:
            self.writes += 1
        return removed


# Default store used by the HTTP adapter
job_cache = InMemoryJobCache()
