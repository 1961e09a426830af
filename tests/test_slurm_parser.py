"""Tests for squeue / sacct / sbatch output parsing."""

from __future__ import annotations

import pytest

from slurmlink.errors import ErrorKind, ProtocolError
from slurmlink.models.jobs import JobState
from slurmlink.utils.slurm_parser import (
    is_already_finished,
    is_invalid_job_id_error,
    map_slurm_state,
    parse_active_line,
    parse_history_line,
    parse_submission_output,
    split_record,
)
from tests.mock_ssh import SACCT_CANCELLED, SACCT_COMPLETED, SQUEUE_PENDING, SQUEUE_RUNNING


class TestActiveRecords:
    def test_running_record(self):
        rec = parse_active_line(SQUEUE_RUNNING)
        assert rec.job_id == "12345678"
        assert rec.scheduler_job_id == "12345678"
        assert rec.state == JobState.running
        assert rec.time_used == "00:15:30"
        assert rec.time_left == "01:44:30"
        assert rec.node_count == 1
        assert rec.cpu_count == 24
        assert rec.memory == "16GB"
        assert rec.partition == "amilan"
        assert rec.working_directory == "/scratch/alpine/testuser/namdrunner_jobs/test_job"
        assert rec.source == "squeue"

    def test_pending_record(self):
        rec = parse_active_line(SQUEUE_PENDING)
        assert rec.state == JobState.pending
        assert rec.name == "queued_job"

    def test_trailing_empty_field_tolerated(self):
        rec = parse_active_line(SQUEUE_RUNNING + "|")
        assert rec.working_directory.endswith("test_job")

    def test_too_few_fields_is_protocol_error(self):
        line = "12345678|test_job|R|00:15:30"
        with pytest.raises(ProtocolError) as exc_info:
            parse_active_line(line)
        assert exc_info.value.kind is ErrorKind.protocol
        assert exc_info.value.raw == line
        assert exc_info.value.retryable is False

    def test_unknown_state_is_protocol_error(self):
        line = SQUEUE_RUNNING.replace("|R|", "|ZZ|")
        with pytest.raises(ProtocolError) as exc_info:
            parse_active_line(line)
        assert exc_info.value.raw == line

    def test_non_numeric_counts_become_none(self):
        line = "1|j|PD|0:00|N/A|N/A|N/A|N/A|amilan|/w"
        rec = parse_active_line(line)
        assert rec.node_count is None
        assert rec.time_left is None


class TestHistoryRecords:
    def test_completed_record(self):
        rec = parse_history_line(SACCT_COMPLETED)
        assert rec is not None
        assert rec.job_id == "12345678"
        assert rec.state == JobState.completed
        assert rec.elapsed == "01:00:00"
        assert rec.exit_code == "0:0"
        assert rec.started_at == "2025-01-15T10:00:00"
        assert rec.ended_at == "2025-01-15T11:00:00"
        assert rec.source == "sacct"

    def test_literal_record_with_elided_path(self):
        line = "12345678|test_job|COMPLETED|0:0|2025-01-15T10:00:00|2025-01-15T11:00:00|01:00:00|/scratch/.../test_job"
        rec = parse_history_line(line)
        assert rec.state == JobState.completed
        assert rec.elapsed == "01:00:00"

    def test_cancelled_by_uid(self):
        rec = parse_history_line(SACCT_CANCELLED)
        assert rec.state == JobState.cancelled
        assert rec.raw_state == "CANCELLED by 0"

    def test_step_lines_skipped(self):
        assert parse_history_line("12345678.batch|batch|COMPLETED|0:0|a|b|01:00:00|") is None

    def test_parsable2_trailing_pipe(self):
        rec = parse_history_line(SACCT_COMPLETED + "|")
        assert rec.working_directory.endswith("test_job")

    def test_too_few_fields(self):
        with pytest.raises(ProtocolError):
            parse_history_line("12345678|test_job|COMPLETED")

    def test_pipe_inside_working_dir_is_kept(self):
        rec = parse_history_line("1|j|FAILED|1:0|a|b|00:01:00|/weird|dir")
        assert rec.working_directory == "/weird|dir"
        assert rec.state == JobState.failed


class TestStateMapping:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("PD", JobState.pending),
            ("pending", JobState.pending),
            ("R", JobState.running),
            ("CG", JobState.running),
            ("CD", JobState.completed),
            ("F", JobState.failed),
            ("TO", JobState.failed),
            ("TIMEOUT", JobState.failed),
            ("NODE_FAIL", JobState.failed),
            ("OUT_OF_MEMORY", JobState.failed),
            ("PREEMPTED", JobState.failed),
            ("CA", JobState.cancelled),
            ("CANCELLED by 12345", JobState.cancelled),
            ("CANCELLED+", JobState.cancelled),
        ],
    )
    def test_known_codes(self, code, expected):
        assert map_slurm_state(code) == expected

    def test_unknown_code(self):
        with pytest.raises(ProtocolError):
            map_slurm_state("MYSTERY")


class TestSplitRecord:
    def test_exact(self):
        assert split_record("a|b|c", 3) == ["a", "b", "c"]

    def test_short(self):
        with pytest.raises(ProtocolError):
            split_record("a|b", 3)


class TestMessages:
    def test_submission(self):
        assert parse_submission_output("Submitted batch job 12345678\n") == "12345678"

    def test_submission_with_noise(self):
        out = "sbatch: loading modules\nSubmitted batch job 42\n"
        assert parse_submission_output(out) == "42"

    def test_submission_missing(self):
        assert parse_submission_output("sbatch: error: Batch job submission failed") is None

    def test_invalid_job_id(self):
        assert is_invalid_job_id_error("slurm_load_jobs error: Invalid job id specified")
        assert not is_invalid_job_id_error("slurm_load_jobs error: Socket timed out")

    def test_already_finished(self):
        assert is_already_finished("Job/step already completing or completed")
        assert not is_already_finished("Access/permission denied")
