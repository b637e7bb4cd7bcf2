"""Tests for the read-only query API (api/projection_api.py).

Uses httpx AsyncClient over ASGITransport, with a LedgerService wired to the
in-process ledger.
"""

import pytest
from httpx import AsyncClient, ASGITransport

from agentledger.api.projection_api import create_app
from agentledger.config.settings import Settings
from agentledger.exceptions import TransientChainError
from agentledger.service import LedgerService, shutdown_service

from conftest import CI_VALIDATOR, CLIENT


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        read_model_path=str(tmp_path / "read_model.db"),
        task_store_path=str(tmp_path / "tasks.db"),
        audit_path=str(tmp_path / "audit.db"),
        evidence_dir=str(tmp_path / "evidence"),
        chain_id=1,
        validators=[CI_VALIDATOR],
        required_validators=[CI_VALIDATOR],
        retry_initial_delay_ms=1,
        retry_max_delay_ms=2,
        read_max_retries=1,
    )


@pytest.fixture
async def service(settings, ledger, owner, owner_key):
    service = LedgerService(
        settings=settings,
        chain_client=owner,
        feedback_client=ledger.client(CLIENT),
    )
    service.issuer.add_key(owner_key[0])

    agent_id = (await owner.register("ipfs://agent-card", [("name", b"builder")])).value
    request = await owner.validation_request(CI_VALIDATOR, agent_id, "sha256://req", "0xcontent")
    await ledger.client(CI_VALIDATOR).validation_response(request.value, 85, "", "", "ci-passed")
    await service.indexer.sync_once()
    return service


@pytest.fixture
async def client(service):
    transport = ASGITransport(app=create_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# --- Health ---

async def test_health_reports_checkpoint(client, ledger):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["checkpoint"] == ledger.head.number
    assert data["head"] == ledger.head.number


async def test_health_degraded_returns_503(client, service, ledger):
    ledger.fail_next("get_block_number", TransientChainError("rpc down"), times=5)
    await service.indexer._sync_guarded()

    resp = await client.get("/health")
    assert resp.status_code == 503
    assert resp.json()["degraded"] is True


# --- Agents ---

async def test_get_agent(client, owner):
    resp = await client.get("/agents/42")
    assert resp.status_code == 200
    data = resp.json()
    assert data["owner"] == owner.account
    assert data["metadata"] == {"name": "0x" + b"builder".hex()}


async def test_get_agent_not_found(client):
    resp = await client.get("/agents/7")
    assert resp.status_code == 404


async def test_reputation_empty(client):
    resp = await client.get("/agents/42/reputation", params={"tag1": "pass"})
    assert resp.json() == {"agent_id": 42, "count": 0, "average_score": 0.0, "tag1": "pass", "tag2": None}


async def test_validations_for_agent(client):
    resp = await client.get("/agents/42/validations")
    data = resp.json()
    assert data["summary"]["requests"] == 1
    assert data["summary"]["average_score"] == 85.0
    assert data["requests"][0]["status"] == "responded"
    assert data["requests"][0]["response"]["tag"] == "ci-passed"


async def test_get_validation_by_hash(client, service):
    request_hash = service.read_model.list_agent_validations(42)[0].request_hash
    resp = await client.get(f"/validations/{request_hash}")
    assert resp.status_code == 200
    assert resp.json()["validator"] == CI_VALIDATOR

    assert (await client.get("/validations/0xmissing")).status_code == 404


# --- Tasks & quarantine ---

async def test_task_lookup(client, service):
    service.orchestrator.submit_task("task-1", 42, "git://repo@abc")
    resp = await client.get("/tasks/task-1")
    assert resp.status_code == 200
    assert resp.json()["state"] == "created"
    assert (await client.get("/tasks/nope")).status_code == 404


async def test_quarantine_listing(client, service, ledger):
    ledger.inject_log(1, {"event": "Bogus", "tx_hash": "0x1", "args": {}})
    service.read_model.reset()
    await service.indexer.sync_once()

    resp = await client.get("/quarantine", params={"limit": 10})
    assert [r["event_kind"] for r in resp.json()] == ["Bogus"]
    assert (await client.get("/quarantine", params={"limit": 0})).status_code == 422


async def test_feedback_listing_after_task(client, service):
    service.orchestrator.submit_task("task-1", 42, "git://repo@abc")
    await service.orchestrator.advance("task-1")
    request_hash = service.task_store.get("task-1").request_hashes[CI_VALIDATOR]
    await service.chain_client.ledger.client(CI_VALIDATOR).validation_response(
        request_hash, 90, "", "", "ci-passed"
    )
    await service.indexer.sync_once()
    await service.orchestrator.advance("task-1")
    await service.indexer.sync_once()

    resp = await client.get("/agents/42/feedback")
    feedback = resp.json()
    assert [(f["feedback_index"], f["score"], f["revoked"]) for f in feedback] == [(0, 95, False)]
    summary = (await client.get("/agents/42/reputation")).json()
    assert summary["count"] == 1


async def test_default_app_uses_process_wide_service(monkeypatch, settings):
    monkeypatch.setattr("agentledger.service.get_settings", lambda: settings)
    app = create_app()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["checkpoint"] is None
    finally:
        await shutdown_service()
