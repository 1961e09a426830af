"""Sanitizers for user-supplied values that end up in remote paths or commands.

Everything here is pure: values are either returned unchanged or rejected with
``InputValidationError``. Nothing is silently rewritten into something else.
"""

from __future__ import annotations

import re
import shlex

from slurmlink.errors import InputValidationError

MAX_IDENTIFIER_LENGTH = 64
MAX_RELATIVE_PATH_LENGTH = 255

_IDENTIFIER_RE = re.compile(r"[A-Za-z0-9_-]+")
_USERNAME_RE = re.compile(r"[A-Za-z0-9._-]+")
_PATH_SEGMENT_RE = re.compile(r"[A-Za-z0-9._-]+")


def _reject_dangerous(value: str, field: str) -> None:
    if not value:
        raise InputValidationError(f"{field} cannot be empty", details={"field": field})
    if "\x00" in value:
        raise InputValidationError(f"{field} contains a null byte", details={"field": field})
    if ".." in value:
        raise InputValidationError(f"{field} contains '..'", details={"field": field})
    if "/" in value or "\\" in value:
        raise InputValidationError(f"{field} contains a path separator", details={"field": field})


def sanitize_identifier(value: str, *, field: str = "identifier") -> str:
    """Validate a job ID or similar token: ``[A-Za-z0-9_-]+``, at most 64 chars."""
    _reject_dangerous(value, field)
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise InputValidationError(
            f"{field} longer than {MAX_IDENTIFIER_LENGTH} characters",
            details={"field": field, "length": len(value)},
        )
    if not _IDENTIFIER_RE.fullmatch(value):
        raise InputValidationError(
            f"{field} may only contain letters, digits, '_' and '-'",
            details={"field": field},
        )
    return value


def sanitize_username(value: str) -> str:
    """Like ``sanitize_identifier`` but cluster usernames may contain dots."""
    _reject_dangerous(value, "username")
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise InputValidationError("username too long", details={"field": "username"})
    if not _USERNAME_RE.fullmatch(value):
        raise InputValidationError(
            "username may only contain letters, digits, '.', '_' and '-'",
            details={"field": "username"},
        )
    return value


def sanitize_scheduler_job_id(value: str) -> str:
    """SLURM job IDs are digits, optionally with an array suffix (``123_4``)."""
    sanitize_identifier(value, field="scheduler_job_id")
    if not re.fullmatch(r"\d+(_\d+)?", value):
        raise InputValidationError(
            "scheduler job id must be numeric",
            details={"field": "scheduler_job_id"},
        )
    return value


def validate_relative_path(value: str) -> str:
    """Accept ``inputs/system.pdb``-style paths that stay inside a job directory."""
    if not value:
        raise InputValidationError("path cannot be empty", details={"field": "path"})
    if "\x00" in value:
        raise InputValidationError("path contains a null byte", details={"field": "path"})
    if len(value) > MAX_RELATIVE_PATH_LENGTH:
        raise InputValidationError("path too long", details={"field": "path"})
    if value.startswith(("/", "\\")) or "\\" in value:
        raise InputValidationError("path must be relative", details={"field": "path"})
    for segment in value.split("/"):
        if segment in ("", ".", ".."):
            raise InputValidationError(
                f"invalid path segment {segment!r}",
                details={"field": "path"},
            )
        if not _PATH_SEGMENT_RE.fullmatch(segment):
            raise InputValidationError(
                f"path segment {segment!r} contains disallowed characters",
                details={"field": "path"},
            )
    return value


def escape_for_command(value: str) -> str:
    """Quote *value* as a single shell token."""
    if "\x00" in value:
        raise InputValidationError("value contains a null byte", details={"field": "argument"})
    return shlex.quote(value)


def safe_cd_and_run(directory: str, command: str) -> str:
    """``cd <directory> && <command>`` with the directory escaped."""
    return f"cd {escape_for_command(directory)} && {command}"
