import httpx
import pytest_asyncio
from jose import jwt

from api.main import create_app
from tests.conftest import AGENT_SECRET

OWNER = "owner-1"


def bearer(settings, owner_id=OWNER) -> dict:
    token = jwt.encode({"sub": owner_id}, settings.auth.secret_key, algorithm=settings.auth.algorithm)
    return {"Authorization": f"Bearer {token}"}


AGENT_HEADERS = {"x-agent-secret": AGENT_SECRET}


@pytest_asyncio.fixture
async def app(test_settings):
    application = create_app(test_settings)
    db_manager = application.state.container.db_manager()
    # ASGITransport does not run lifespan events
    await db_manager.init()
    yield application
    await db_manager.shutdown()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://coordinator.test") as http_client:
        yield http_client
