"""Utilities for parsing SLURM command output."""

from __future__ import annotations

import re
from typing import Optional

from slurmlink.errors import ProtocolError
from slurmlink.models.jobs import JobState, JobStatusRecord


# ---------------------------------------------------------------------------
# State codes
# ---------------------------------------------------------------------------

SLURM_STATE_MAP: dict[str, JobState] = {
    "PD": JobState.pending,
    "PENDING": JobState.pending,
    "R": JobState.running,
    "RUNNING": JobState.running,
    "CG": JobState.running,
    "COMPLETING": JobState.running,
    "CF": JobState.running,
    "CONFIGURING": JobState.running,
    "CD": JobState.completed,
    "COMPLETED": JobState.completed,
    "F": JobState.failed,
    "FAILED": JobState.failed,
    "TO": JobState.failed,
    "TIMEOUT": JobState.failed,
    "NF": JobState.failed,
    "NODE_FAIL": JobState.failed,
    "PR": JobState.failed,
    "PREEMPTED": JobState.failed,
    "OOM": JobState.failed,
    "OUT_OF_MEMORY": JobState.failed,
    "BF": JobState.failed,
    "BOOT_FAIL": JobState.failed,
    "DL": JobState.failed,
    "DEADLINE": JobState.failed,
    "CA": JobState.cancelled,
    "CANCELLED": JobState.cancelled,
}


def map_slurm_state(code: str) -> JobState:
    """Translate a squeue/sacct state (``R``, ``CANCELLED by 42``) to ``JobState``."""
    token = code.strip().split(" ", 1)[0].rstrip("+").upper()
    state = SLURM_STATE_MAP.get(token)
    if state is None:
        raise ProtocolError(f"unknown SLURM state {code!r}", raw=code)
    return state


# ---------------------------------------------------------------------------
# Pipe-delimited records
# ---------------------------------------------------------------------------

# squeue --format=%i|%j|%t|%M|%L|%D|%C|%m|%P|%Z
ACTIVE_FIELDS = (
    "job_id", "name", "state_code", "time_used", "time_left",
    "node_count", "cpu_count", "memory", "partition", "working_dir",
)
# sacct --format=JobID,JobName,State,ExitCode,Start,End,Elapsed,WorkDir
HISTORY_FIELDS = (
    "job_id", "name", "state", "exit_code", "start", "end", "elapsed", "working_dir",
)

_EMPTY_VALUES = {"", "N/A", "Unknown", "None", "(null)"}


def split_record(line: str, expected: int) -> list[str]:
    """Split *line* on ``|`` into exactly *expected* fields.

    A trailing empty field (``--parsable2`` style) is dropped. Extra fields are
    folded back into the last one, which is always the working directory.
    """
    fields = line.rstrip("\r\n").split("|")
    if len(fields) > expected and fields[-1] == "":
        fields.pop()
    if len(fields) < expected:
        raise ProtocolError(
            f"expected {expected} fields, got {len(fields)}",
            raw=line,
        )
    if len(fields) > expected:
        fields = fields[: expected - 1] + ["|".join(fields[expected - 1:])]
    return [f.strip() for f in fields]


def _opt(value: str) -> Optional[str]:
    return None if value in _EMPTY_VALUES else value


def _opt_int(value: str) -> Optional[int]:
    return int(value) if value.isdigit() else None


def parse_active_line(line: str) -> JobStatusRecord:
    """Parse one squeue line into a ``JobStatusRecord``."""
    f = dict(zip(ACTIVE_FIELDS, split_record(line, len(ACTIVE_FIELDS))))
    if not f["job_id"]:
        raise ProtocolError("squeue record has no job id", raw=line)
    try:
        state = map_slurm_state(f["state_code"])
    except ProtocolError as exc:
        raise ProtocolError(exc.message, raw=line) from exc
    return JobStatusRecord(
        job_id=f["job_id"],
        scheduler_job_id=f["job_id"],
        name=f["name"],
        state=state,
        raw_state=f["state_code"],
        source="squeue",
        time_used=_opt(f["time_used"]),
        time_left=_opt(f["time_left"]),
        node_count=_opt_int(f["node_count"]),
        cpu_count=_opt_int(f["cpu_count"]),
        memory=_opt(f["memory"]),
        partition=_opt(f["partition"]),
        working_directory=_opt(f["working_dir"]),
    )


def parse_history_line(line: str) -> Optional[JobStatusRecord]:
    """Parse one sacct line. Job step lines (``123.batch``) return None."""
    f = dict(zip(HISTORY_FIELDS, split_record(line, len(HISTORY_FIELDS))))
    if not f["job_id"]:
        raise ProtocolError("sacct record has no job id", raw=line)
    if "." in f["job_id"]:
        return None
    try:
        state = map_slurm_state(f["state"])
    except ProtocolError as exc:
        raise ProtocolError(exc.message, raw=line) from exc
    return JobStatusRecord(
        job_id=f["job_id"],
        scheduler_job_id=f["job_id"],
        name=f["name"],
        state=state,
        raw_state=f["state"],
        source="sacct",
        exit_code=_opt(f["exit_code"]),
        started_at=_opt(f["start"]),
        ended_at=_opt(f["end"]),
        elapsed=_opt(f["elapsed"]),
        working_directory=_opt(f["working_dir"]),
    )


# ---------------------------------------------------------------------------
# sbatch / scancel / squeue messages
# ---------------------------------------------------------------------------

_SUBMITTED_RE = re.compile(r"Submitted batch job (\d+)")
_INVALID_JOB_ID_RE = re.compile(r"Invalid job id specified", re.IGNORECASE)
_ALREADY_FINISHED_RE = re.compile(
    r"already completing or completed|job has already finished|invalid job id specified",
    re.IGNORECASE,
)


def parse_submission_output(output: str) -> Optional[str]:
    """Return the job ID from ``Submitted batch job 123``, or None."""
    m = _SUBMITTED_RE.search(output)
    return m.group(1) if m else None


def is_invalid_job_id_error(output: str) -> bool:
    return bool(_INVALID_JOB_ID_RE.search(output))


def is_already_finished(output: str) -> bool:
    """True when scancel says the job is already over."""
    return bool(_ALREADY_FINISHED_RE.search(output))
