import pytest

from tests.integration.api.conftest import AGENT_HEADERS, bearer

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def _link(client, settings, **overrides):
    body = {"label": "Main", "login": "5012345", "password": "pw", "server": "Broker-Demo"}
    body.update(overrides)
    response = await client.post("/api/v1/accounts", json=body, headers=bearer(settings))
    assert response.status_code == 201
    return response.json()


async def test_agent_endpoints_require_secret(client):
    assert (await client.get("/api/v1/agent/pending")).status_code == 401
    response = await client.get("/api/v1/agent/pending", headers={"x-agent-secret": "wrong"})
    assert response.status_code == 401
    assert response.json()["ok"] is False
    # Raw latin-1 byte; the server decodes it to a non-ASCII str
    response = await client.post("/api/v1/agent/heartbeat", json={}, headers={"x-agent-secret": b"caf\xe9"})
    assert response.status_code == 401


async def test_agent_endpoints_unavailable_in_web_only_mode(test_settings):
    import httpx

    from api.main import create_app

    settings = test_settings.model_copy(
        update={"coordinator": test_settings.coordinator.model_copy(update={"agent_secret": ""})}
    )
    app = create_app(settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://coordinator.test") as client:
        response = await client.post("/api/v1/agent/heartbeat", json={}, headers=AGENT_HEADERS)
    assert response.status_code == 503


async def test_pending_queue_carries_decrypted_credentials(client, test_settings):
    linked = await _link(client, test_settings, role="master", user_name="Alice")

    response = await client.get("/api/v1/agent/pending", headers=AGENT_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["server_url"] == test_settings.coordinator.publish_base_url
    account = body["accounts"][0]
    assert account["id"] == linked["account_id"]
    assert account["login"] == "5012345"
    assert account["password"] == "pw"
    assert account["role"] == "master"
    assert account["channel_code"] == linked["channel"]["code"]
    assert account["master_key"] == linked["channel"]["master_key"]


async def test_status_report_flow(client, test_settings):
    account_id = (await _link(client, test_settings))["account_id"]

    response = await client.post("/api/v1/agent/status", json={"account_id": account_id, "status": "running"},
                                 headers=AGENT_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "running"
    assert (await client.get("/api/v1/agent/pending", headers=AGENT_HEADERS)).json()["accounts"] == []

    stop = await client.post(f"/api/v1/accounts/{account_id}/stop", headers=bearer(test_settings))
    assert stop.status_code == 200
    queue = (await client.get("/api/v1/agent/stop-queue", headers=AGENT_HEADERS)).json()
    assert queue == {"accounts": [{"id": account_id}]}


async def test_malformed_status_report_is_bad_request(client):
    response = await client.post("/api/v1/agent/status", json={"account_id": 1, "status": "dancing"},
                                 headers=AGENT_HEADERS)
    assert response.status_code == 400


async def test_status_report_for_unknown_account(client):
    response = await client.post("/api/v1/agent/status", json={"account_id": 999, "status": "running"},
                                 headers=AGENT_HEADERS)
    assert response.status_code == 404


async def test_heartbeat_marks_agent_connected(client):
    before = (await client.get("/api/v1/system/status")).json()
    assert before["agent_configured"] is True
    assert before["agent_connected"] is False

    ack = await client.post("/api/v1/agent/heartbeat", json={}, headers=AGENT_HEADERS)
    assert ack.status_code == 200
    assert ack.json()["ok"] is True

    after = (await client.get("/api/v1/system/status")).json()
    assert after["agent_connected"] is True
    assert after["agent_last_seen"] == ack.json()["server_time"]


async def test_unlink_running_account_waits_for_agent(client, test_settings):
    account_id = (await _link(client, test_settings))["account_id"]
    await client.post("/api/v1/agent/status", json={"account_id": account_id, "status": "running"},
                      headers=AGENT_HEADERS)

    response = await client.delete(f"/api/v1/accounts/{account_id}", headers=bearer(test_settings))
    assert response.json()["deleted"] is False

    ack = await client.post("/api/v1/agent/status", json={"account_id": account_id, "status": "stopped"},
                            headers=AGENT_HEADERS)
    assert ack.json()["deleted"] is True
    listed = (await client.get("/api/v1/accounts", headers=bearer(test_settings))).json()
    assert listed == []


async def test_account_endpoints_require_bearer(client):
    assert (await client.get("/api/v1/accounts")).status_code == 401


async def test_invalid_transition_is_conflict(client, test_settings):
    account_id = (await _link(client, test_settings))["account_id"]
    response = await client.post(f"/api/v1/accounts/{account_id}/start", headers=bearer(test_settings))
    assert response.status_code == 200  # pending_vps re-queue
    await client.post("/api/v1/agent/status", json={"account_id": account_id, "status": "running"},
                      headers=AGENT_HEADERS)
    response = await client.post(f"/api/v1/accounts/{account_id}/start", headers=bearer(test_settings))
    assert response.status_code == 409
