"""Tests for discovery and the sync merge."""

from __future__ import annotations

import pytest

from slurmlink.models.jobs import JobRecord, JobState
from slurmlink.services.executor import CommandExecutor
from slurmlink.services.reconcile import Reconciler, apply_remote_state
from slurmlink.services.scheduler import SchedulerClient
from slurmlink.services.transfer import TransferEngine
from slurmlink.utils.paths import JobPaths
from tests.conftest import PROJECT_BASE, SCRATCH_BASE, USERNAME
from tests.mock_ssh import SACCT_CANCELLED, SACCT_COMPLETED, SQUEUE_PENDING, SQUEUE_RUNNING


@pytest.fixture
def reconciler(connected, cache, test_settings):
    executor = CommandExecutor(connected, test_settings)
    return Reconciler(
        SchedulerClient(executor, test_settings),
        TransferEngine(connected, executor, test_settings),
        cache,
        JobPaths(test_settings),
    )


def _job(job_id: str, status: JobState, slurm_job_id: str | None = None) -> JobRecord:
    return JobRecord(job_id=job_id, job_name=job_id, status=status, slurm_job_id=slurm_job_id)


def _metadata(job_id: str, **kwargs) -> str:
    return JobRecord(job_id=job_id, job_name=job_id.upper(), **kwargs).to_metadata_json()


class TestApplyRemoteState:
    def test_same_state_is_not_a_change(self):
        assert apply_remote_state(_job("a", JobState.running), JobState.running) is None

    def test_forward_transition(self):
        updated = apply_remote_state(_job("a", JobState.pending), JobState.running)
        assert updated.status == JobState.running
        assert updated.updated_at is not None
        assert updated.completed_at is None

    def test_terminal_sets_completed_at(self):
        updated = apply_remote_state(_job("a", JobState.running), JobState.completed)
        assert updated.completed_at is not None

    @pytest.mark.parametrize("terminal", [JobState.completed, JobState.failed, JobState.cancelled])
    @pytest.mark.parametrize("remote", [JobState.pending, JobState.running])
    def test_terminal_never_regresses(self, terminal, remote):
        assert apply_remote_state(_job("a", terminal), remote) is None

    def test_terminal_to_terminal_follows_remote(self):
        updated = apply_remote_state(_job("a", JobState.failed), JobState.cancelled)
        assert updated.status == JobState.cancelled


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_imports_valid_metadata_and_reports_bad(self, reconciler, cluster, cache):
        cluster.add_file(
            f"{PROJECT_BASE}/job_a/job_info.json",
            _metadata("job_a", status=JobState.running, slurm_job_id="12345678"),
        )
        cluster.add_file(f"{PROJECT_BASE}/job_b/job_info.json", "not json")
        cluster.add_file(f"{PROJECT_BASE}/job_c/job_info.json", _metadata("someone_else"))
        cluster.add_dir(f"{PROJECT_BASE}/job_d")
        cluster.add_dir(f"{PROJECT_BASE}/bad.name")
        cluster.add_file(f"{PROJECT_BASE}/README", "notes")
        cluster.add_active(SQUEUE_RUNNING)

        report = await reconciler.sync(USERNAME)

        assert report.discovery.imported_jobs == ["job_a"]
        failed = sorted(f.directory for f in report.discovery.failed_imports)
        assert failed == [
            f"{PROJECT_BASE}/bad.name",
            f"{PROJECT_BASE}/job_b",
            f"{PROJECT_BASE}/job_c",
            f"{PROJECT_BASE}/job_d",
        ]
        imported = cache.get("job_a")
        assert imported.job_name == "JOB_A"
        assert imported.status == JobState.running
        assert imported.project_dir == f"{PROJECT_BASE}/job_a"
        assert [j.job_id for j in report.jobs] == ["job_a"]
        assert report.jobs_updated == []
        assert report.cache_writes == 0

    @pytest.mark.asyncio
    async def test_missing_project_base_is_empty_discovery(self, reconciler, cluster):
        report = await reconciler.sync(USERNAME)
        assert report.discovery.imported_jobs == []
        assert report.discovery.failed_imports == []
        assert report.jobs == []
        assert cluster.commands == []

    @pytest.mark.asyncio
    async def test_no_discovery_when_cache_has_jobs(self, reconciler, cluster, cache):
        cache.upsert(_job("local", JobState.created))
        cluster.add_file(f"{PROJECT_BASE}/job_a/job_info.json", _metadata("job_a"))
        report = await reconciler.sync(USERNAME)
        assert report.discovery is None
        assert cache.get("job_a") is None
        assert cluster.sftp_sessions == 0

    @pytest.mark.asyncio
    async def test_discover_skips_cached_jobs(self, reconciler, cluster, cache):
        cache.upsert(_job("job_a", JobState.completed))
        cluster.add_file(f"{PROJECT_BASE}/job_a/job_info.json", _metadata("job_a", status=JobState.running))
        report = await reconciler.discover(USERNAME)
        assert report.imported_jobs == []
        assert cache.get("job_a").status == JobState.completed


class TestSync:
    @pytest.mark.asyncio
    async def test_updates_changed_jobs_only(self, reconciler, cluster, cache):
        cache.upsert(_job("j_run", JobState.pending, "12345678"))
        cache.upsert(_job("j_admin", JobState.running, "12345680"))
        cache.upsert(_job("j_done", JobState.completed, "12345681"))
        cache.upsert(_job("j_new", JobState.created))
        cluster.add_active(SQUEUE_RUNNING)
        cluster.add_history(SACCT_CANCELLED)
        writes_before = cache.writes

        report = await reconciler.sync(USERNAME)

        changes = {c.job_id: (c.previous, c.current) for c in report.jobs_updated}
        assert changes == {
            "j_run": (JobState.pending, JobState.running),
            "j_admin": (JobState.running, JobState.cancelled),
        }
        assert report.cache_writes == 2
        assert cache.writes == writes_before + 2
        assert cache.get("j_admin").completed_at is not None
        assert cache.get("j_done").status == JobState.completed
        assert cache.get("j_new").status == JobState.created
        assert report.errors == []
        squeue = cluster.slurm_commands("squeue")
        assert len(squeue) == 1
        assert "12345681" not in squeue[0]

    @pytest.mark.asyncio
    async def test_second_sync_writes_nothing(self, reconciler, cluster, cache):
        cache.upsert(_job("j_run", JobState.pending, "12345678"))
        cache.upsert(_job("j_old", JobState.running, "12345670"))
        cluster.add_active(SQUEUE_RUNNING)
        cluster.add_history(SACCT_CANCELLED.replace("12345680", "12345670"))

        await reconciler.sync(USERNAME)
        writes_after_first = cache.writes
        report = await reconciler.sync(USERNAME)

        assert report.cache_writes == 0
        assert report.jobs_updated == []
        assert cache.writes == writes_after_first

    @pytest.mark.asyncio
    async def test_merge_is_keyed_not_positional(self, reconciler, cluster, cache):
        cache.upsert(_job("first", JobState.pending, "12345678"))
        cache.upsert(_job("second", JobState.running, "12345679"))
        cluster.add_response("squeue", stdout=f"{SQUEUE_PENDING}\n{SQUEUE_RUNNING}\n")

        await reconciler.sync(USERNAME)

        assert cache.get("first").status == JobState.running
        assert cache.get("second").status == JobState.pending

    @pytest.mark.asyncio
    async def test_missing_job_reported_not_changed(self, reconciler, cluster, cache):
        cache.upsert(_job("j_lost", JobState.running, "55555555"))
        cache.upsert(_job("j_done", JobState.running, "12345678"))
        cluster.add_history(SACCT_COMPLETED)

        report = await reconciler.sync(USERNAME)

        assert [(e.job_id, e.error.code) for e in report.errors] == [("j_lost", "SLURM_003")]
        assert cache.get("j_lost").status == JobState.running
        assert cache.get("j_done").status == JobState.completed

    @pytest.mark.asyncio
    async def test_parse_error_does_not_block_other_jobs(self, reconciler, cluster, cache):
        cache.upsert(_job("j_run", JobState.pending, "12345678"))
        cache.upsert(_job("j_bad", JobState.pending, "12345679"))
        cluster.add_active(SQUEUE_RUNNING)
        cluster.add_active("12345679|broken|PD")

        report = await reconciler.sync(USERNAME)

        assert cache.get("j_run").status == JobState.running
        assert cache.get("j_bad").status == JobState.pending
        assert len(report.errors) == 1
        assert report.errors[0].job_id == "j_bad"
        assert report.errors[0].error.kind == "Protocol"

    @pytest.mark.asyncio
    async def test_sacct_failure_reported_per_job(self, reconciler, cluster, cache):
        cache.upsert(_job("j_run", JobState.pending, "12345678"))
        cache.upsert(_job("j_old", JobState.running, "12345680"))
        cluster.add_active(SQUEUE_RUNNING)
        cluster.add_response("sacct", stderr="sacct: error: slurmdbd unavailable\n", exit_code=1)

        report = await reconciler.sync(USERNAME)

        assert cache.get("j_run").status == JobState.running
        assert cache.get("j_old").status == JobState.running
        assert report.cache_writes == 1
        assert [(e.job_id, e.error.code) for e in report.errors] == [("j_old", "SLURM_002")]

    @pytest.mark.asyncio
    async def test_malformed_scheduler_id_isolated_to_its_job(self, reconciler, cluster, cache):
        cluster.add_file(
            f"{PROJECT_BASE}/good/job_info.json",
            _metadata("good", status=JobState.pending, slurm_job_id="12345678"),
        )
        cluster.add_file(
            f"{PROJECT_BASE}/bad/job_info.json",
            _metadata("bad", status=JobState.running, slurm_job_id="not-a-number"),
        )
        cluster.add_active(SQUEUE_RUNNING)

        report = await reconciler.sync(USERNAME)

        assert sorted(report.discovery.imported_jobs) == ["bad", "good"]
        assert cache.get("good").status == JobState.running
        assert cache.get("bad").status == JobState.running
        assert [(e.job_id, e.error.kind) for e in report.errors] == [("bad", "Validation")]
        squeue = cluster.slurm_commands("squeue")
        assert len(squeue) == 1
        assert "not-a-number" not in squeue[0]


class TestCompletion:
    SCRATCH = f"{SCRATCH_BASE}/j_done"
    PROJECT = f"{PROJECT_BASE}/j_done"

    def _running(self) -> JobRecord:
        return _job("j_done", JobState.running, "12345678").model_copy(
            update={"scratch_dir": self.SCRATCH, "project_dir": self.PROJECT},
        )

    @pytest.mark.asyncio
    async def test_terminal_transition_copies_scratch_to_project(self, reconciler, cluster, cache):
        cache.upsert(self._running())
        cluster.add_file(f"{self.SCRATCH}/outputs/run.dcd", b"\x00\x01")
        cluster.add_file(f"{self.SCRATCH}/j_done_12345678.out", "done\n")
        cluster.add_history(SACCT_COMPLETED)

        report = await reconciler.sync(USERNAME)

        assert cache.get("j_done").status == JobState.completed
        assert report.errors == []
        assert bytes(cluster.files[f"{self.PROJECT}/outputs/run.dcd"]) == b"\x00\x01"
        assert bytes(cluster.files[f"{self.PROJECT}/j_done_12345678.out"]) == b"done\n"

    @pytest.mark.asyncio
    async def test_no_copy_while_still_running(self, reconciler, cluster, cache):
        cache.upsert(self._running().model_copy(update={"status": JobState.pending}))
        cluster.add_active(SQUEUE_RUNNING)
        await reconciler.sync(USERNAME)
        assert [c for c in cluster.commands if "rsync" in c] == []

    @pytest.mark.asyncio
    async def test_copy_failure_is_a_job_error(self, reconciler, cluster, cache):
        cache.upsert(self._running())
        cluster.add_history(SACCT_COMPLETED)
        cluster.add_response("rsync", stderr="rsync: write failed: Disk quota exceeded\n", exit_code=23)

        report = await reconciler.sync(USERNAME)

        assert cache.get("j_done").status == JobState.completed
        assert report.cache_writes == 1
        assert len(report.errors) == 1
        assert report.errors[0].job_id == "j_done"
        assert report.errors[0].error.code == "FS_001"
        assert "Disk quota" in report.errors[0].error.message
