"""Run single remote commands through the managed session."""

from __future__ import annotations

import time
from typing import Optional

import paramiko

from slurmlink.config import Settings, settings
from slurmlink.errors import ClusterError
from slurmlink.models.commands import RemoteCommandResult
from slurmlink.services.connection import ConnectionManager, connection_manager
from slurmlink.services.retry import RetryPolicy, quick_policy
from slurmlink.utils.logging import get_logger

log = get_logger(__name__)


class CommandExecutor:
    """Executes commands with a per-call timeout, classification, and retry."""

    def __init__(
        self,
        mgr: ConnectionManager | None = None,
        cfg: Settings | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._mgr = mgr or connection_manager
        self._policy = policy or quick_policy(self._cfg)

    @property
    def manager(self) -> ConnectionManager:
        return self._mgr

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> RemoteCommandResult:
        """Run *command* and return its output and exit status.

        A non-zero exit status is not an error here; callers decide what it
        means. Channel-level failures that survive retrying expire the session.
        """
        timeout = timeout or self._cfg.command_timeout

        async def attempt(client: paramiko.SSHClient) -> RemoteCommandResult:
            return await self._mgr.offload(
                _exec_command_wrapper,
                client,
                command,
                timeout,
                timeout=timeout,
                operation="exec",
            )

        try:
            result = await self._mgr.guarded(attempt, policy=retry or self._policy, name="exec")
        except ClusterError as exc:
            log.warning("ssh.exec_failed", command=_summarize(command), error_code=exc.code)
            raise

        log.debug(
            "ssh.exec",
            command=_summarize(command),
            exit_code=result.exit_code,
            elapsed=round(result.elapsed_time, 3),
        )
        return result


def _summarize(command: str, limit: int = 200) -> str:
    return command if len(command) <= limit else command[:limit] + "..."


# ── module-level sync wrappers (executor-friendly) ────────────────────────

def _exec_command_wrapper(
    client: paramiko.SSHClient,
    command: str,
    timeout: Optional[float],
) -> RemoteCommandResult:
    start = time.monotonic()
    stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
    stdin.close()
    out = stdout.read().decode("utf-8", errors="replace")
    err = stderr.read().decode("utf-8", errors="replace")
    exit_code = stdout.channel.recv_exit_status()
    return RemoteCommandResult(
        command=command,
        stdout=out,
        stderr=err,
        exit_code=exit_code,
        elapsed_time=time.monotonic() - start,
    )
