"""Cluster SSH session manager with a connection state machine and channel lock.

paramiko is synchronous, so every blocking call runs on a small thread pool
while the event loop keeps serving other tasks. One ``asyncio.Lock`` guards the
channel: commands and transfers queue behind it in submission order.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import paramiko

from slurmlink.config import Settings, settings
from slurmlink.errors import (
    AlreadyConnectedError,
    ClusterError,
    ConnectionInProgressError,
    NetworkError,
    NotConnectedError,
    OperationTimeoutError,
    SessionExpiredError,
    classify_exception,
)
from slurmlink.models.session import ConnectionState, ConnectionStatus, SessionInfo
from slurmlink.services.retry import RetryPolicy, retry_async
from slurmlink.services.vault import SecureCredential
from slurmlink.utils.logging import get_logger
from slurmlink.utils.validation import sanitize_username

log = get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[], paramiko.SSHClient]


class ConnectionManager:
    """Owns at most one authenticated cluster session."""

    def __init__(
        self,
        cfg: Settings | None = None,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        self._cfg = cfg or settings
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None
        self._session: Optional[SessionInfo] = None
        self._state = ConnectionState.disconnected
        self._last_error: Optional[ClusterError] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self._cfg.ssh_worker_threads,
            thread_name_prefix="ssh",
        )

    # ── state ─────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.connected

    @property
    def username(self) -> str:
        if self._session is None:
            raise self._unavailable_error()
        return self._session.username

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            session=self._session,
            last_error=self._last_error.to_info() if self._last_error else None,
        )

    def _unavailable_error(self) -> ClusterError:
        if self._state is ConnectionState.expired:
            return SessionExpiredError(cause=self._last_error)
        if self._state is ConnectionState.connecting:
            return ConnectionInProgressError()
        return NotConnectedError()

    # ── connection lifecycle ──────────────────────────────────────────

    async def connect(
        self,
        username: str,
        credential: SecureCredential,
        *,
        host: str | None = None,
        port: int | None = None,
    ) -> SessionInfo:
        """Authenticate with a password and open the session.

        Allowed from Disconnected or Expired only. The credential is wiped when
        this call returns, whatever the outcome.
        """
        try:
            if self._state is ConnectionState.connecting:
                raise ConnectionInProgressError()
            if self._state is ConnectionState.connected:
                raise AlreadyConnectedError()
            username = sanitize_username(username)
            host = host or self._cfg.cluster_host
            port = port or self._cfg.cluster_port

            self._state = ConnectionState.connecting
            self._generation += 1
            generation = self._generation
            log.info("ssh.connecting", host=host, port=port, username=username)

            try:
                client = await self._open(host, port, username, credential)
            except BaseException as exc:
                if self._generation == generation:
                    self._state = ConnectionState.disconnected
                    self._session = None
                if not isinstance(exc, Exception):
                    raise
                error = classify_exception(exc, operation="connect")
                self._last_error = error
                log.warning("ssh.connect_failed", host=host, error_code=error.code, error=error.message)
                raise error from exc

            if self._generation != generation:
                # disconnect() was called while the handshake was running
                self._executor.submit(_close_client_wrapper, client)
                raise NotConnectedError("connection attempt was cancelled")

            self._client = client
            self._last_error = None
            self._session = SessionInfo(
                state=ConnectionState.connected,
                host=host,
                username=username,
                port=port,
                connected_at=datetime.now(timezone.utc),
            )
            self._state = ConnectionState.connected
            log.info("ssh.connected", host=host, username=username)
            return self._session
        finally:
            credential.wipe()

    async def _open(
        self,
        host: str,
        port: int,
        username: str,
        credential: SecureCredential,
    ) -> paramiko.SSHClient:
        loop = asyncio.get_running_loop()
        cf = self._executor.submit(
            _open_client_wrapper,
            self._client_factory,
            host,
            port,
            username,
            credential,
            self._cfg.ssh_connect_timeout,
            self._cfg.ssh_keepalive_interval,
        )

        def _close_orphan(done) -> None:
            if done.cancelled() or done.exception() is not None:
                return
            _close_client_wrapper(done.result())

        try:
            client = await asyncio.wait_for(
                asyncio.wrap_future(cf, loop=loop),
                self._cfg.ssh_connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            cf.add_done_callback(_close_orphan)
            raise OperationTimeoutError(
                f"connect to {host} timed out after {self._cfg.ssh_connect_timeout}s",
                details={"operation": "connect"},
            ) from exc
        except asyncio.CancelledError:
            cf.add_done_callback(_close_orphan)
            raise
        return client

    async def disconnect(self) -> bool:
        """Tear down the session. Returns False when there was nothing to do."""
        client = self._client
        previous = self._state
        self._generation += 1
        self._client = None
        self._session = None
        self._state = ConnectionState.disconnected
        if client is None and previous is ConnectionState.disconnected:
            return False
        if client is not None:
            await self._run(_close_client_wrapper, client)
        log.info("ssh.disconnected", previous_state=previous.value)
        return True

    def expire(self, error: ClusterError, *, client: paramiko.SSHClient | None = None) -> None:
        """Mark the live session dead after a channel-level failure."""
        if client is not None and client is not self._client:
            return
        if self._state is not ConnectionState.connected:
            return
        stale = self._client
        self._client = None
        self._session = None
        self._state = ConnectionState.expired
        self._last_error = error
        if stale is not None:
            self._executor.submit(_close_client_wrapper, stale)
        log.warning("ssh.session_expired", error_code=error.code, reason=error.message)

    async def close(self) -> None:
        await self.disconnect()
        self._executor.shutdown(wait=False)

    # ── channel access ────────────────────────────────────────────────

    def _require_client(self) -> paramiko.SSHClient:
        if self._state is not ConnectionState.connected or self._client is None:
            raise self._unavailable_error()
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            error = NetworkError("ssh transport is no longer active", session_fatal=True)
            self.expire(error)
            raise SessionExpiredError(cause=error)
        return self._client

    @asynccontextmanager
    async def channel(self) -> AsyncIterator[paramiko.SSHClient]:
        """Exclusive access to the live client for one remote operation."""
        async with self._lock:
            yield self._require_client()

    async def guarded(
        self,
        operation: Callable[[paramiko.SSHClient], Awaitable[T]],
        *,
        policy: RetryPolicy,
        name: str,
    ) -> T:
        """Run *operation* under the channel lock with classification and retry.

        Each attempt takes the lock separately so queued work can interleave
        between retries. A session-fatal error that outlives its retries
        expires the session.
        """
        used: list[paramiko.SSHClient] = []

        async def attempt() -> T:
            async with self.channel() as client:
                used.append(client)
                try:
                    return await operation(client)
                except ClusterError:
                    raise
                except Exception as exc:
                    raise classify_exception(exc, operation=name) from exc

        try:
            return await retry_async(attempt, policy, name=name)
        except ClusterError as exc:
            if exc.session_fatal:
                self.expire(exc, client=used[-1] if used else None)
            raise

    # ── helpers ───────────────────────────────────────────────────────

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def offload(self, fn, *args, timeout: float | None = None, operation: str = "remote call"):
        """Run blocking *fn* on the worker pool, giving up after *timeout* seconds.

        On timeout the worker thread is left to finish on its own.
        """
        fut = self._run(fn, *args)
        if timeout is None:
            return await fut
        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"{operation} timed out after {timeout}s",
                details={"operation": operation, "timeout": timeout},
                session_fatal=True,
            ) from exc


# ── module-level sync wrappers (executor-friendly) ────────────────────────

def _open_client_wrapper(
    factory: ClientFactory,
    host: str,
    port: int,
    username: str,
    credential: SecureCredential,
    connect_timeout: float,
    keepalive_interval: int,
) -> paramiko.SSHClient:
    client = factory()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        # paramiko wants bytes; the copy lives only for this call
        credential.with_secret(
            lambda secret: client.connect(
                hostname=host,
                port=port,
                username=username,
                password=bytes(secret),
                timeout=connect_timeout,
                auth_timeout=connect_timeout,
                banner_timeout=connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            ),
        )
    except BaseException:
        client.close()
        raise
    finally:
        credential.wipe()
    transport = client.get_transport()
    if transport is not None and keepalive_interval > 0:
        transport.set_keepalive(keepalive_interval)
    return client


def _close_client_wrapper(client: paramiko.SSHClient) -> None:
    try:
        client.close()
    except Exception as exc:
        log.debug("ssh.close_failed", error=str(exc))


# ── Singleton instance ────────────────────────────────────────────────────

connection_manager = ConnectionManager()
