"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("SLURMLINK_CLUSTER_HOST", "127.0.0.1")
os.environ.setdefault("SLURMLINK_API_KEY", "")
os.environ.setdefault("SLURMLINK_LOG_LEVEL", "WARNING")

import pytest
from httpx import ASGITransport, AsyncClient

from slurmlink.config import Settings
from slurmlink.services.cluster import ClusterService
from slurmlink.services.connection import ConnectionManager
from slurmlink.services.job_cache import InMemoryJobCache
from slurmlink.services.vault import SecureCredential
from slurmlink.utils.paths import JobPaths
from tests.mock_ssh import FakeCluster

USERNAME = "testuser"
PROJECT_BASE = "/projects/testuser/namdrunner_jobs"
SCRATCH_BASE = "/scratch/alpine/testuser/namdrunner_jobs"


@pytest.fixture
def test_settings():
    """Settings with zero backoff so retry tests do not sleep."""
    return Settings(
        cluster_host="hpc.test",
        retry_quick_base_delay=0.0,
        retry_quick_max_attempts=2,
        retry_files_base_delay=0.0,
        retry_files_max_attempts=3,
        ssh_connect_timeout=5.0,
        transfer_chunk_timeout=5.0,
        api_key="",
    )


@pytest.fixture
def cluster():
    """Provide a fresh in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def manager(test_settings, cluster):
    """A ConnectionManager that is not connected yet."""
    mgr = ConnectionManager(test_settings, client_factory=cluster.client_factory)
    yield mgr
    await mgr.close()


@pytest.fixture
async def connected(manager, cluster):
    """The same manager, logged in as testuser."""
    await manager.connect(USERNAME, SecureCredential(cluster.password))
    return manager


@pytest.fixture
def cache():
    return InMemoryJobCache()


@pytest.fixture
def service(connected, cache, test_settings):
    return ClusterService(
        mgr=connected,
        cache=cache,
        cfg=test_settings,
        paths=JobPaths(test_settings),
    )


@pytest.fixture
async def client(manager, cache, test_settings, monkeypatch):
    """Async test client with a fake-cluster ClusterService injected."""
    svc = ClusterService(
        mgr=manager,
        cache=cache,
        cfg=test_settings,
        paths=JobPaths(test_settings),
    )

    # Patch the singleton in every router that imported it
    import slurmlink.routers.connection as rc
    import slurmlink.routers.files as rf
    import slurmlink.routers.health as rh
    import slurmlink.routers.jobs as rj

    for mod in (rc, rf, rh, rj):
        monkeypatch.setattr(mod, "cluster_service", svc)

    from slurmlink.main import app as fastapi_app

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
