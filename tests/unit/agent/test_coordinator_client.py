import json

import httpx
import pytest

from core.schemas.control_plane import AccountStatus
from core.utils.exceptions import CoordinatorUnavailableError
from services.agent.client import CoordinatorClient
from tests.conftest import AGENT_SECRET


def _client(agent_settings, handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://coordinator.test")
    return CoordinatorClient(agent_settings, http_client=http_client)


@pytest.fixture
def agent_settings(test_settings):
    return test_settings.agent


@pytest.mark.asyncio
async def test_requests_carry_agent_secret(agent_settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"accounts": [{"id": 4}, {"id": 2}]})

    client = _client(agent_settings, handler)
    assert await client.fetch_stop_queue() == [4, 2]
    assert seen[0].url.path == "/api/v1/agent/stop-queue"
    assert seen[0].headers["x-agent-secret"] == AGENT_SECRET


@pytest.mark.asyncio
async def test_pending_queue_parsed(agent_settings):
    def handler(request):
        return httpx.Response(200, json={
            "server_url": "https://relay.test",
            "accounts": [{"id": 1, "login": "5012345", "password": "pw", "server": "Broker-Demo",
                          "role": "master", "lot_mode": "FIXED"}],
        })

    queue = await _client(agent_settings, handler).fetch_pending()
    account = queue.accounts[0]
    assert queue.server_url == "https://relay.test"
    assert account.password.get_secret_value() == "pw"
    assert account.lot_mode.plugin_value == 1


@pytest.mark.asyncio
async def test_http_error_raises_unavailable(agent_settings):
    def handler(request):
        return httpx.Response(401, json={"ok": False, "error": "Unauthorized"})

    with pytest.raises(CoordinatorUnavailableError) as exc_info:
        await _client(agent_settings, handler).heartbeat()
    assert exc_info.value.status_code == 401
    assert "Unauthorized" in exc_info.value.message


@pytest.mark.asyncio
async def test_transport_error_raises_unavailable(agent_settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CoordinatorUnavailableError):
        await _client(agent_settings, handler).fetch_pending()


@pytest.mark.asyncio
async def test_status_report_failure_is_swallowed(agent_settings):
    def handler(request):
        return httpx.Response(500, text="boom")

    assert await _client(agent_settings, handler).report_status(1, AccountStatus.RUNNING) is False


@pytest.mark.asyncio
async def test_status_report_body(agent_settings):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.read()))
        return httpx.Response(200, json={"ok": True, "status": "running"})

    assert await _client(agent_settings, handler).report_status(3, AccountStatus.RUNNING) is True
    assert bodies == [{"account_id": 3, "status": "running"}]
