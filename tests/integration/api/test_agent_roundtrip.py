import httpx
import pytest

from core.schemas.control_plane import AccountStatus
from services.agent.client import CoordinatorClient
from tests.integration.api.conftest import bearer

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def test_agent_client_against_coordinator(app, client, test_settings):
    body = {"label": "Main", "login": "5012345", "password": "pw", "server": "Broker-Demo"}
    account_id = (await client.post("/api/v1/accounts", json=body, headers=bearer(test_settings))).json()["account_id"]

    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://coordinator.test")
    agent_client = CoordinatorClient(test_settings.agent, http_client=http_client)
    try:
        ack = await agent_client.heartbeat()
        assert ack.ok is True

        queue = await agent_client.fetch_pending()
        assert [a.id for a in queue.accounts] == [account_id]
        assert queue.accounts[0].password.get_secret_value() == "pw"

        assert await agent_client.report_status(account_id, AccountStatus.RUNNING) is True
        assert (await agent_client.fetch_pending()).accounts == []
        assert await agent_client.fetch_stop_queue() == []
    finally:
        await http_client.aclose()
