"""Integration tests exercising the full API with the fake cluster."""

from __future__ import annotations

import pytest

from slurmlink.config import settings
from tests.conftest import PROJECT_BASE, USERNAME


async def _login(client, cluster):
    resp = await client.post(
        "/connect",
        json={"username": USERNAME, "password": cluster.password.decode()},
    )
    assert resp.json()["success"] is True


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"]


@pytest.mark.asyncio
async def test_connection_status_starts_disconnected(client):
    resp = await client.get("/connection/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["data"]["state"] == "Disconnected"
    assert data["data"]["session"] is None


@pytest.mark.asyncio
async def test_connect_and_disconnect(client, cluster):
    await _login(client, cluster)
    status = (await client.get("/connection/status")).json()["data"]
    assert status["state"] == "Connected"
    assert status["session"]["username"] == USERNAME
    assert status["session"]["host"] == "hpc.test"

    resp = await client.post("/disconnect")
    assert resp.json() == {"success": True, "data": True, "error": None}


@pytest.mark.asyncio
async def test_bad_password_is_envelope_not_http_error(client):
    resp = await client.post("/connect", json={"username": USERNAME, "password": "wrong"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is False
    assert data["error"]["kind"] == "Authentication"
    assert data["error"]["code"] == "AUTH_001"
    assert "wrong" not in resp.text


@pytest.mark.asyncio
async def test_operations_before_connect(client):
    resp = await client.post("/jobs", json={"job_id": "job1"})
    data = resp.json()
    assert data["success"] is False
    assert data["error"]["code"] == "CONN_001"


@pytest.mark.asyncio
async def test_job_lifecycle(client, cluster):
    await _login(client, cluster)

    created = (await client.post("/jobs", json={"job_id": "job1", "job_name": "Demo"})).json()
    assert created["success"] is True
    assert created["data"]["jobId"] == "job1"
    assert created["data"]["status"] == "CREATED"
    assert f"{PROJECT_BASE}/job1/job_info.json" in cluster.files

    listed = (await client.get("/jobs")).json()
    assert [j["jobId"] for j in listed["data"]] == ["job1"]

    submitted = (await client.post("/jobs/job1/submit")).json()
    assert submitted["data"]["status"] == "PENDING"
    assert submitted["data"]["slurmJobId"] == "20000001"

    status = (await client.post("/jobs/status", json={"job_ids": ["job1"]})).json()
    assert status["data"]["records"]["job1"]["state"] == "PENDING"

    cancelled = (await client.post("/jobs/job1/cancel")).json()
    assert cancelled["data"]["cancelled"] is True
    assert cancelled["data"]["state"] == "CANCELLED"

    synced = (await client.post("/jobs/sync")).json()
    assert synced["success"] is True
    assert synced["data"]["cache_writes"] == 0


@pytest.mark.asyncio
async def test_unknown_job(client, cluster):
    await _login(client, cluster)
    resp = await client.post("/jobs/ghost/submit")
    data = resp.json()
    assert data["success"] is False
    assert data["error"]["code"] == "JOB_001"


@pytest.mark.asyncio
async def test_upload_and_download(client, cluster, tmp_path):
    await _login(client, cluster)
    await client.post("/jobs", json={"job_id": "job1"})
    local = tmp_path / "system.pdb"
    local.write_text("ATOM 1\n")

    resp = await client.post(
        "/jobs/job1/files/upload",
        json={"files": [{"local_path": str(local), "remote_name": "system.pdb"}]},
    )
    batch = resp.json()["data"]
    assert len(batch["transferred"]) == 1
    assert batch["failed"] == []

    target = tmp_path / "copy.pdb"
    resp = await client.post(
        "/jobs/job1/files/download",
        json={"remote_name": "input_files/system.pdb", "local_path": str(target)},
    )
    assert resp.json()["success"] is True
    assert target.read_text() == "ATOM 1\n"


@pytest.mark.asyncio
async def test_delete_job_endpoint(client, cluster):
    await _login(client, cluster)
    await client.post("/jobs", json={"job_id": "job1"})
    await client.post("/jobs", json={"job_id": "job2"})

    resp = await client.delete("/jobs/job1", params={"delete_remote": "true"})
    assert resp.json() == {"success": True, "data": "job1", "error": None}
    assert f"{PROJECT_BASE}/job1/job_info.json" not in cluster.files

    resp = await client.delete("/jobs/job2")
    assert resp.json()["success"] is True
    assert f"{PROJECT_BASE}/job2/job_info.json" in cluster.files

    listed = (await client.get("/jobs")).json()
    assert listed["data"] == []

    resp = await client.delete("/jobs/job1")
    assert resp.json()["error"]["code"] == "JOB_001"


@pytest.mark.asyncio
async def test_job_logs_endpoint(client, cluster):
    await _login(client, cluster)
    resp = await client.get("/jobs/nope/logs")
    assert resp.json()["error"]["code"] == "JOB_001"


@pytest.mark.asyncio
async def test_missing_api_key_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "s3cret")
    resp = await client.post("/jobs/sync")
    assert resp.status_code == 401

    resp = await client.post("/jobs/sync", headers={"X-API-Key": "s3cret"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_health_needs_no_key(client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "s3cret")
    resp = await client.get("/health")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_request_validation(client):
    resp = await client.post("/connect", json={"username": USERNAME})
    assert resp.status_code == 422
