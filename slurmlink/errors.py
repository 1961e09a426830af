"""Error taxonomy for every cluster-facing failure.

Each exception carries an ``ErrorKind``, a short code, and a retryable flag.
``classify_exception`` turns whatever paramiko, the socket layer, or the SFTP
client raised into one of these so retry and session-expiry decisions are made
in one place.
"""

from __future__ import annotations

import errno
import socket
from enum import Enum
from typing import Any, Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from slurmlink.models.responses import ErrorInfo


class ErrorKind(str, Enum):
    network = "Network"
    authentication = "Authentication"
    permission = "Permission"
    filesystem = "FileSystem"
    protocol = "Protocol"
    timeout = "Timeout"
    validation = "Validation"
    internal = "Internal"


RETRYABLE_KINDS = frozenset({ErrorKind.network, ErrorKind.timeout})


class ClusterError(Exception):
    """Base class for classified failures."""

    kind: ErrorKind = ErrorKind.internal
    code: str = "INT_001"
    suggestions: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        session_fatal: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        if code is not None:
            self.code = code
        self._retryable = retryable
        # True when the failure means the underlying channel is unusable
        self.session_fatal = session_fatal

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.kind in RETRYABLE_KINDS

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(
            kind=self.kind.value,
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=self.details,
            suggestions=list(self.suggestions),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, code={self.code}, message={self.message!r})"


class NetworkError(ClusterError):
    kind = ErrorKind.network
    code = "NET_001"
    suggestions = (
        "Check your network connection",
        "Verify VPN connection if required",
        "Confirm the cluster login host is reachable",
    )


class AuthenticationError(ClusterError):
    kind = ErrorKind.authentication
    code = "AUTH_001"
    suggestions = (
        "Verify username and password",
        "Check whether the account is locked",
    )


class PermissionDeniedError(ClusterError):
    kind = ErrorKind.permission
    code = "PERM_001"
    suggestions = ("Check file and directory permissions on the cluster",)


class RemoteFileSystemError(ClusterError):
    kind = ErrorKind.filesystem
    code = "FS_001"
    suggestions = ("Verify the path exists", "Check available disk quota")


class ProtocolError(ClusterError):
    """Malformed or unexpected remote output. ``raw`` keeps the offending text."""

    kind = ErrorKind.protocol
    code = "PROTO_001"

    def __init__(self, message: str, *, raw: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.raw = raw
        self.details.setdefault("raw", raw)


class OperationTimeoutError(ClusterError):
    kind = ErrorKind.timeout
    code = "TIMEOUT_001"
    suggestions = ("The cluster may be under heavy load; try again later",)


class InputValidationError(ClusterError):
    kind = ErrorKind.validation
    code = "VAL_001"


class InternalError(ClusterError):
    kind = ErrorKind.internal
    code = "INT_001"


# ── session state errors ──────────────────────────────────────────────────

class NotConnectedError(ClusterError):
    kind = ErrorKind.internal
    code = "CONN_001"
    suggestions = ("Connect to the cluster first",)

    def __init__(self, message: str = "not connected to cluster", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(ClusterError):
    kind = ErrorKind.network
    code = "CONN_002"
    suggestions = ("Reconnect with your password to continue",)

    def __init__(self, message: str = "session expired", *, cause: Optional[ClusterError] = None, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.cause = cause
        if cause is not None:
            self.details.setdefault("cause", cause.message)
            self.details.setdefault("cause_code", cause.code)


class ConnectionInProgressError(ClusterError):
    kind = ErrorKind.internal
    code = "CONN_003"

    def __init__(self, message: str = "connection in progress", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AlreadyConnectedError(ClusterError):
    kind = ErrorKind.internal
    code = "CONN_004"
    suggestions = ("Disconnect before opening a new session",)

    def __init__(self, message: str = "already connected", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# ── scheduler errors ──────────────────────────────────────────────────────

class SubmissionError(ClusterError):
    kind = ErrorKind.internal
    code = "SLURM_001"
    suggestions = ("Check the job script and the scheduler output",)


class SchedulerCommandError(ClusterError):
    kind = ErrorKind.internal
    code = "SLURM_002"


class JobNotFoundError(SchedulerCommandError):
    """Neither squeue nor sacct know the job (purged or outside the history window)."""

    code = "SLURM_003"


# ── local job errors ──────────────────────────────────────────────────────

class UnknownJobError(InputValidationError):
    code = "JOB_001"


class InvalidJobStateError(InputValidationError):
    code = "JOB_002"


# ── classification ────────────────────────────────────────────────────────

_NETWORK_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ENETDOWN,
})


def classify_exception(exc: BaseException, *, operation: str = "") -> ClusterError:
    """Map a raw transport/OS exception to a ``ClusterError``."""
    if isinstance(exc, ClusterError):
        return exc

    text = str(exc) or type(exc).__name__
    details = {"operation": operation} if operation else {}

    if isinstance(exc, paramiko.AuthenticationException):
        return AuthenticationError(f"authentication failed: {text}", details=details, session_fatal=True)
    if isinstance(exc, paramiko.BadHostKeyException):
        return AuthenticationError(f"host key mismatch: {text}", details=details, code="AUTH_002", session_fatal=True)
    if isinstance(exc, paramiko.ChannelException):
        if "prohibited" in text.lower() or "denied" in text.lower():
            return PermissionDeniedError(f"channel refused: {text}", details=details, session_fatal=True)
        return NetworkError(f"channel open failed: {text}", details=details, session_fatal=True)
    if isinstance(exc, socket.timeout):
        return OperationTimeoutError(f"timed out: {text}", details=details, session_fatal=True)
    if isinstance(exc, paramiko.SSHException):
        lowered = text.lower()
        if "not active" in lowered or "closed" in lowered or "eof" in lowered:
            return NetworkError(f"ssh transport lost: {text}", details=details, session_fatal=True)
        return ProtocolError(f"ssh protocol error: {text}", raw=text, details=details, session_fatal=True)
    if isinstance(exc, EOFError):
        return NetworkError("connection closed by remote host", details=details, session_fatal=True)
    if isinstance(exc, NoValidConnectionsError):
        return NetworkError(f"unable to connect: {text}", details=details)
    if isinstance(exc, socket.gaierror):
        return NetworkError(f"cannot resolve host: {text}", details=details, code="NET_002")
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(f"permission denied: {text}", details=details)
    if isinstance(exc, FileNotFoundError):
        return RemoteFileSystemError(f"no such file or directory: {text}", details=details, code="FS_002")
    if isinstance(exc, ConnectionError) or (isinstance(exc, OSError) and exc.errno in _NETWORK_ERRNOS):
        return NetworkError(f"network failure: {text}", details=details, session_fatal=True)
    if isinstance(exc, OSError):
        return RemoteFileSystemError(f"filesystem error: {text}", details=details)
    return InternalError(f"unexpected error: {text}", details=details)
