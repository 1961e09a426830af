"""Chunked SFTP transfers with per-chunk timeouts and progress events.

Every chunk is read, written, and flushed in its own worker call with its own
timeout, so a large file never runs against one cumulative deadline. A transfer
that dies partway leaves the partial destination file where it is.
"""

from __future__ import annotations

import os
import posixpath
import stat
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import paramiko

from slurmlink.config import Settings, settings
from slurmlink.errors import ClusterError, RemoteFileSystemError
from slurmlink.models.transfer import (
    BatchTransferResult,
    FileTransferFailure,
    RemoteEntry,
    TransferProgress,
    TransferResult,
)
from slurmlink.services.connection import ConnectionManager, connection_manager
from slurmlink.services.executor import CommandExecutor
from slurmlink.services.retry import RetryPolicy, files_policy, quick_policy
from slurmlink.utils.logging import get_logger
from slurmlink.utils.validation import escape_for_command

log = get_logger(__name__)

ProgressCallback = Callable[[TransferProgress], None]


class TransferEngine:
    """Upload, download and small remote file helpers over the shared session."""

    def __init__(
        self,
        mgr: ConnectionManager | None = None,
        executor: CommandExecutor | None = None,
        cfg: Settings | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._mgr = mgr or connection_manager
        self._executor = executor or CommandExecutor(self._mgr, self._cfg)
        self._policy = policy or files_policy(self._cfg)
        self._quick = quick_policy(self._cfg)
        self.chunk_size = self._cfg.transfer_chunk_size
        self.chunk_timeout = self._cfg.transfer_chunk_timeout

    # ── chunked transfers ─────────────────────────────────────────────

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        if not os.path.isfile(local_path):
            raise RemoteFileSystemError(
                f"local file not found: {local_path}",
                details={"local_path": local_path},
                code="FS_003",
            )

        async def attempt(client: paramiko.SSHClient) -> TransferResult:
            total = os.path.getsize(local_path)
            sftp = await self._offload(client.open_sftp, operation="sftp open")
            try:
                dst = await self._offload(sftp.open, remote_path, "wb", operation="sftp open file")
                try:
                    with open(local_path, "rb") as src:
                        return await self._pump(
                            src, dst, total, "upload", local_path, remote_path, on_progress,
                        )
                finally:
                    await self._offload(dst.close, operation="sftp close file")
            finally:
                await self._offload(sftp.close, operation="sftp close")

        try:
            result = await self._mgr.guarded(attempt, policy=self._policy, name="upload")
        except ClusterError as exc:
            log.warning("transfer.upload_failed", remote_path=remote_path, error_code=exc.code)
            raise
        log.info(
            "transfer.uploaded",
            remote_path=remote_path,
            bytes=result.bytes_transferred,
            chunks=result.chunks,
        )
        return result

    async def download(
        self,
        remote_path: str,
        local_path: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        parent = os.path.dirname(os.path.abspath(local_path))
        os.makedirs(parent, exist_ok=True)

        async def attempt(client: paramiko.SSHClient) -> TransferResult:
            sftp = await self._offload(client.open_sftp, operation="sftp open")
            try:
                attrs = await self._offload(sftp.stat, remote_path, operation="sftp stat")
                total = attrs.st_size or 0
                src = await self._offload(sftp.open, remote_path, "rb", operation="sftp open file")
                try:
                    with open(local_path, "wb") as dst:
                        return await self._pump(
                            src, dst, total, "download", local_path, remote_path, on_progress,
                        )
                finally:
                    await self._offload(src.close, operation="sftp close file")
            finally:
                await self._offload(sftp.close, operation="sftp close")

        try:
            result = await self._mgr.guarded(attempt, policy=self._policy, name="download")
        except ClusterError as exc:
            log.warning("transfer.download_failed", remote_path=remote_path, error_code=exc.code)
            raise
        log.info(
            "transfer.downloaded",
            remote_path=remote_path,
            bytes=result.bytes_transferred,
            chunks=result.chunks,
        )
        return result

    async def upload_many(
        self,
        items: list[tuple[str, str]],
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchTransferResult:
        """Upload (local, remote) pairs, recording failures per file."""
        batch = BatchTransferResult()
        for local_path, remote_path in items:
            try:
                batch.transferred.append(
                    await self.upload(local_path, remote_path, on_progress=on_progress),
                )
            except ClusterError as exc:
                batch.failed.append(
                    FileTransferFailure(
                        local_path=local_path,
                        remote_path=remote_path,
                        error=exc.to_info(),
                    ),
                )
        return batch

    async def _pump(
        self,
        src,
        dst,
        total: int,
        direction: str,
        local_path: str,
        remote_path: str,
        on_progress: Optional[ProgressCallback],
    ) -> TransferResult:
        file_name = posixpath.basename(remote_path)
        transferred = 0
        chunks = 0
        start = time.monotonic()
        while True:
            n = await self._offload(
                _copy_chunk_wrapper,
                src,
                dst,
                self.chunk_size,
                timeout=self.chunk_timeout,
                operation=f"{direction} chunk",
            )
            if n == 0:
                break
            transferred += n
            chunks += 1
            if on_progress is not None:
                on_progress(_progress(direction, file_name, transferred, total, start))
        if chunks == 0 and on_progress is not None:
            on_progress(_progress(direction, file_name, 0, total, start))
        return TransferResult(
            local_path=local_path,
            remote_path=remote_path,
            bytes_transferred=transferred,
            chunks=chunks,
            elapsed_time=time.monotonic() - start,
        )

    async def _offload(self, fn, *args, timeout: float | None = None, operation: str = "sftp"):
        return await self._mgr.offload(
            fn, *args, timeout=timeout or self.chunk_timeout, operation=operation,
        )

    # ── small files and listings ──────────────────────────────────────

    async def write_text(self, remote_path: str, text: str) -> None:
        data = text.encode("utf-8")

        async def attempt(client: paramiko.SSHClient) -> None:
            await self._offload(_write_bytes_wrapper, client, remote_path, data, operation="sftp write")

        await self._mgr.guarded(attempt, policy=self._quick, name="write_text")
        log.debug("transfer.wrote_text", remote_path=remote_path, bytes=len(data))

    async def read_text(self, remote_path: str) -> str:
        async def attempt(client: paramiko.SSHClient) -> bytes:
            return await self._offload(_read_bytes_wrapper, client, remote_path, operation="sftp read")

        data = await self._mgr.guarded(attempt, policy=self._quick, name="read_text")
        return data.decode("utf-8", errors="replace")

    async def list_directory(self, remote_path: str) -> list[RemoteEntry]:
        async def attempt(client: paramiko.SSHClient) -> list[RemoteEntry]:
            return await self._offload(_list_directory_wrapper, client, remote_path, operation="sftp listdir")

        return await self._mgr.guarded(attempt, policy=self._quick, name="list_directory")

    async def exists(self, remote_path: str) -> bool:
        async def attempt(client: paramiko.SSHClient) -> bool:
            return await self._offload(_exists_wrapper, client, remote_path, operation="sftp stat")

        return await self._mgr.guarded(attempt, policy=self._quick, name="exists")

    # ── shell-side directory helpers ──────────────────────────────────

    async def mkdir(self, *remote_paths: str) -> None:
        """``mkdir -p -m 0755`` for every path, in one remote call."""
        if not remote_paths:
            return
        targets = " ".join(escape_for_command(p) for p in remote_paths)
        result = await self._executor.run(f"mkdir -p -m 0755 {targets}", timeout=self._cfg.quick_timeout)
        if result.exit_code != 0:
            raise RemoteFileSystemError(
                f"mkdir failed: {result.stderr.strip()}",
                details={"paths": list(remote_paths), "exit_code": result.exit_code},
            )

    async def mirror_directory(self, source_dir: str, target_dir: str) -> None:
        """Copy *source_dir* into *target_dir* on the cluster with rsync."""
        source = escape_for_command(source_dir.rstrip("/") + "/")
        target = escape_for_command(target_dir.rstrip("/") + "/")
        command = f"mkdir -p -m 0755 {escape_for_command(target_dir)} && rsync -a {source} {target}"
        result = await self._executor.run(command, timeout=self._cfg.command_timeout)
        if result.exit_code != 0:
            raise RemoteFileSystemError(
                f"rsync failed: {result.stderr.strip()}",
                details={"source": source_dir, "target": target_dir, "exit_code": result.exit_code},
            )

    async def remove_directory(self, remote_path: str) -> None:
        """``rm -rf`` one directory tree. Callers vet *remote_path* first."""
        result = await self._executor.run(
            f"rm -rf {escape_for_command(remote_path)}",
            timeout=self._cfg.command_timeout,
        )
        if result.exit_code != 0:
            raise RemoteFileSystemError(
                f"rm failed: {result.stderr.strip()}",
                details={"path": remote_path, "exit_code": result.exit_code},
            )


def _progress(direction: str, file_name: str, transferred: int, total: int, start: float) -> TransferProgress:
    elapsed = time.monotonic() - start
    percentage = (transferred / total * 100.0) if total else 100.0
    return TransferProgress(
        direction=direction,
        file_name=file_name,
        bytes_transferred=transferred,
        total_bytes=total,
        percentage=min(percentage, 100.0),
        transfer_rate=transferred / elapsed if elapsed > 0 else 0.0,
    )


# ── module-level sync wrappers (executor-friendly) ────────────────────────

def _copy_chunk_wrapper(src, dst, size: int) -> int:
    data = src.read(size)
    if not data:
        return 0
    dst.write(data)
    dst.flush()
    return len(data)


def _write_bytes_wrapper(client: paramiko.SSHClient, remote_path: str, data: bytes) -> None:
    with client.open_sftp() as sftp:
        with sftp.open(remote_path, "wb") as fh:
            fh.write(data)
            fh.flush()


def _read_bytes_wrapper(client: paramiko.SSHClient, remote_path: str) -> bytes:
    with client.open_sftp() as sftp:
        with sftp.open(remote_path, "rb") as fh:
            return fh.read()


def _list_directory_wrapper(client: paramiko.SSHClient, remote_path: str) -> list[RemoteEntry]:
    with client.open_sftp() as sftp:
        entries = []
        for attr in sftp.listdir_attr(remote_path):
            entries.append(
                RemoteEntry(
                    name=attr.filename,
                    path=posixpath.join(remote_path, attr.filename),
                    size=attr.st_size or 0,
                    is_directory=stat.S_ISDIR(attr.st_mode or 0),
                    modified_at=(
                        datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc)
                        if attr.st_mtime is not None else None
                    ),
                ),
            )
        return sorted(entries, key=lambda e: e.name)


def _exists_wrapper(client: paramiko.SSHClient, remote_path: str) -> bool:
    with client.open_sftp() as sftp:
        try:
            sftp.stat(remote_path)
        except FileNotFoundError:
            return False
        return True
