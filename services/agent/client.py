from typing import Any, List, Optional

import httpx

from core.config.settings import AgentSettings
from core.logging import get_agent_logger_safe
from core.schemas.control_plane import (
    AccountStatus,
    HeartbeatAck,
    PendingQueue,
    StopQueue,
)
from core.utils.exceptions import CoordinatorUnavailableError

AGENT_API_PREFIX = "/api/v1/agent"
SECRET_HEADER = "x-agent-secret"


class CoordinatorClient:
    """HTTP client for the coordinator's agent endpoints.

    Every transport or HTTP failure surfaces as CoordinatorUnavailableError,
    except status reports, which are best-effort.
    """

    def __init__(self, settings: AgentSettings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.coordinator_url.rstrip("/"),
            timeout=settings.request_timeout_seconds,
        )
        self.logger = get_agent_logger_safe("agent.coordinator_client")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        url = f"{AGENT_API_PREFIX}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                headers={SECRET_HEADER: self.settings.agent_secret},
            )
        except httpx.HTTPError as e:
            raise CoordinatorUnavailableError(
                f"{method} {url} failed: {e.__class__.__name__}: {e}", path=url
            ) from e

        if response.status_code >= 400:
            try:
                reason = response.json().get("error") or f"HTTP {response.status_code}"
            except ValueError:
                reason = f"HTTP {response.status_code}"
            raise CoordinatorUnavailableError(
                f"{method} {url} rejected: {reason}", path=url, status_code=response.status_code
            )
        return response.json()

    async def heartbeat(self) -> HeartbeatAck:
        return HeartbeatAck.model_validate(await self._request("POST", "/heartbeat", json={}))

    async def fetch_pending(self) -> PendingQueue:
        return PendingQueue.model_validate(await self._request("GET", "/pending"))

    async def fetch_stop_queue(self) -> List[int]:
        queue = StopQueue.model_validate(await self._request("GET", "/stop-queue"))
        return [entry.id for entry in queue.accounts]

    async def report_status(self, account_id: int, status: AccountStatus) -> bool:
        """Report an observed status. Failures are logged, never raised."""
        try:
            await self._request(
                "POST", "/status", json={"account_id": account_id, "status": AccountStatus(status).value}
            )
            return True
        except CoordinatorUnavailableError as e:
            self.logger.warning("Failed to report account status",
                                account_id=account_id, status=str(AccountStatus(status).value),
                                error=e.message)
            return False
