"""SLURM command builder and client: submit, two-stage status query, cancel."""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from slurmlink.config import Settings, settings
from slurmlink.errors import ProtocolError, SchedulerCommandError, SubmissionError
from slurmlink.models.jobs import JobState, StatusQueryResult
from slurmlink.services.executor import CommandExecutor
from slurmlink.services.retry import NO_RETRY
from slurmlink.utils.logging import get_logger
from slurmlink.utils.paths import JOB_SCRIPT_FILE
from slurmlink.utils.slurm_parser import (
    is_already_finished,
    is_invalid_job_id_error,
    parse_active_line,
    parse_history_line,
    parse_submission_output,
)
from slurmlink.utils.validation import (
    escape_for_command,
    safe_cd_and_run,
    sanitize_scheduler_job_id,
    validate_relative_path,
)

log = get_logger(__name__)

# ── fixed command prefix ──────────────────────────────────────────────────
ENV_INIT = "source /etc/profile"
MODULE_LOADS = ("module load slurm/alpine",)

ACTIVE_FORMAT = "%i|%j|%t|%M|%L|%D|%C|%m|%P|%Z"
HISTORY_FORMAT = "JobID,JobName,State,ExitCode,Start,End,Elapsed,WorkDir"
HISTORY_WINDOW = "$(date -d '7 days ago' +%Y-%m-%d)"


class CancelResult(str, Enum):
    """What a cancel request amounted to on the cluster."""

    cancelled = "cancelled"
    already_finished = "already_finished"
    skipped = "skipped"


def build_command(payload: str) -> str:
    """``<init> && <module loads> && <payload>``."""
    return " && ".join((ENV_INIT, *MODULE_LOADS, payload))


def _job_list(scheduler_job_ids: Iterable[str]) -> str:
    return ",".join(sanitize_scheduler_job_id(i) for i in scheduler_job_ids)


def squeue_command(scheduler_job_ids: Iterable[str]) -> str:
    return (
        f"squeue -j {_job_list(scheduler_job_ids)} "
        f"--format={escape_for_command(ACTIVE_FORMAT)} --noheader"
    )


def sacct_command(scheduler_job_ids: Iterable[str]) -> str:
    return (
        f"sacct -j {_job_list(scheduler_job_ids)} --format={HISTORY_FORMAT} "
        f"--parsable2 --noheader --allocations --starttime={HISTORY_WINDOW}"
    )


def sbatch_command(working_dir: str, script_name: str = JOB_SCRIPT_FILE) -> str:
    script = validate_relative_path(script_name)
    return safe_cd_and_run(working_dir, f"sbatch {escape_for_command(script)}")


def scancel_command(scheduler_job_id: str) -> str:
    return f"scancel {sanitize_scheduler_job_id(scheduler_job_id)}"


class SchedulerClient:
    """Talks to SLURM through the command executor."""

    def __init__(self, executor: CommandExecutor | None = None, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._executor = executor or CommandExecutor(cfg=self._cfg)

    # ── submit ────────────────────────────────────────────────────────

    async def submit(self, working_dir: str, script_name: str = JOB_SCRIPT_FILE) -> str:
        """Run sbatch in *working_dir* and return the scheduler job ID.

        Never retried: a retry after a lost response could submit twice.
        """
        command = build_command(sbatch_command(working_dir, script_name))
        result = await self._executor.run(command, timeout=self._cfg.submit_timeout, retry=NO_RETRY)
        details = {"stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code}
        if result.exit_code != 0:
            raise SubmissionError(
                f"sbatch exited with status {result.exit_code}: {result.stderr.strip()}",
                details=details,
            )
        scheduler_job_id = parse_submission_output(result.stdout)
        if scheduler_job_id is None:
            raise SubmissionError("sbatch output did not contain a job id", details=details)
        log.info("slurm.submitted", scheduler_job_id=scheduler_job_id, working_dir=working_dir)
        return scheduler_job_id

    # ── status ────────────────────────────────────────────────────────

    async def query_status(
        self,
        scheduler_job_ids: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> StatusQueryResult:
        """Look up many jobs in two round trips: squeue, then sacct for the rest.

        A failed sacct call is reported against each job it was asked about;
        records already read from squeue are kept.
        """
        ids = list(dict.fromkeys(sanitize_scheduler_job_id(i) for i in scheduler_job_ids))
        result = StatusQueryResult()
        if not ids:
            return result
        timeout = timeout or self._cfg.scheduler_timeout

        active = await self._executor.run(build_command(squeue_command(ids)), timeout=timeout)
        if active.exit_code == 0:
            _collect(active.stdout, parse_active_line, ids, result)
        elif is_invalid_job_id_error(active.stderr):
            log.debug("slurm.squeue_no_active_jobs", requested=len(ids))
        else:
            log.warning("slurm.squeue_failed", exit_code=active.exit_code, stderr=active.stderr.strip())

        missing = [i for i in ids if i not in result.records and i not in result.errors]
        if missing:
            history = await self._executor.run(build_command(sacct_command(missing)), timeout=timeout)
            if history.exit_code == 0:
                _collect(history.stdout, parse_history_line, missing, result)
            else:
                log.warning("slurm.sacct_failed", exit_code=history.exit_code, stderr=history.stderr.strip())
                for scheduler_job_id in missing:
                    result.errors[scheduler_job_id] = SchedulerCommandError(
                        f"sacct exited with status {history.exit_code}",
                        details={
                            "scheduler_job_id": scheduler_job_id,
                            "stderr": history.stderr,
                            "exit_code": history.exit_code,
                        },
                    ).to_info()

        log.info(
            "slurm.query",
            requested=len(ids),
            active=sum(1 for r in result.records.values() if r.source == "squeue"),
            historical=sum(1 for r in result.records.values() if r.source == "sacct"),
            errors=len(result.errors) + len(result.unattributed_errors),
        )
        return result

    # ── cancel ────────────────────────────────────────────────────────

    async def cancel(self, scheduler_job_id: str, known_state: JobState) -> CancelResult:
        """scancel a Pending/Running job.

        ``already_finished`` means SLURM reported the job as completing or
        completed; its final state has to be read back from the scheduler.
        """
        if not known_state.is_active:
            log.info("slurm.cancel_skipped", scheduler_job_id=scheduler_job_id, state=known_state.value)
            return CancelResult.skipped
        result = await self._executor.run(
            build_command(scancel_command(scheduler_job_id)),
            timeout=self._cfg.quick_timeout,
        )
        if is_already_finished(result.stderr):
            log.info("slurm.cancel_already_finished", scheduler_job_id=scheduler_job_id)
            return CancelResult.already_finished
        if result.exit_code != 0:
            raise SchedulerCommandError(
                f"scancel exited with status {result.exit_code}: {result.stderr.strip()}",
                details={"stderr": result.stderr, "exit_code": result.exit_code},
            )
        log.info("slurm.cancelled", scheduler_job_id=scheduler_job_id)
        return CancelResult.cancelled


def _collect(output: str, parser, wanted: list[str], result: StatusQueryResult) -> None:
    """Parse *output* line by line into *result*, keyed by scheduler job ID."""
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            record = parser(line)
        except ProtocolError as exc:
            job_id = line.split("|", 1)[0].strip()
            if job_id in wanted:
                result.errors[job_id] = exc.to_info()
            else:
                result.unattributed_errors.append(exc.to_info())
            log.warning("slurm.parse_failed", raw=line, error=exc.message)
            continue
        if record is None or record.scheduler_job_id not in wanted:
            continue
        result.records[record.scheduler_job_id] = record
