"""
Agent poll loop.

One cooperative loop, fixed interval. Each tick, in order: heartbeat,
pending-launch queue, stop queue, launches (one at a time), stops,
health check. Any error ends the tick, never the loop.
"""

import asyncio
from typing import Optional

from core.config.settings import AgentSettings
from core.logging import get_agent_logger_safe, get_error_logger_safe
from core.monitoring.metrics import AgentMetrics
from core.schemas.control_plane import AccountStatus, PendingAccount
from core.utils.exceptions import create_error_context
from services.instances import InstanceLifecycleManager, PluginConfig, TerminalCredentials
from .client import CoordinatorClient


def credentials_for(account: PendingAccount) -> TerminalCredentials:
    return TerminalCredentials(login=account.login, password=account.password, server=account.server)


def plugin_config_for(account: PendingAccount, server_url: str) -> PluginConfig:
    return PluginConfig(
        role=account.role,
        server_url=server_url,
        channel_code=account.channel_code,
        master_key=account.master_key,
        lot_mode=account.lot_mode,
        fixed_lot=account.fixed_lot,
        risk_pct=account.risk_pct,
        master_balance=account.master_balance,
        user_name=account.user_name or account.label,
    )


class AgentService:
    def __init__(self, settings: AgentSettings, client: CoordinatorClient,
                 manager: InstanceLifecycleManager, metrics: Optional[AgentMetrics] = None,
                 publish_base_url: str = ""):
        self.settings = settings
        self.client = client
        self.manager = manager
        self.metrics = metrics
        self.publish_base_url = publish_base_url
        self.logger = get_agent_logger_safe("agent.service")
        self.error_logger = get_error_logger_safe("agent.service")
        self.ticks = 0

    async def tick(self) -> None:
        """Run one poll cycle. Coordinator errors propagate to the caller."""
        await self.client.heartbeat()

        pending = await self.client.fetch_pending()
        # Fetched before launching so a tenant being stopped is never relaunched this tick
        stop_ids = await self.client.fetch_stop_queue()
        stopping = set(stop_ids)
        server_url = pending.server_url or self.publish_base_url

        for account in pending.accounts:
            if account.id in stopping:
                self.logger.info("Skipping launch, stop requested", account_id=account.id)
                continue
            if self.manager.is_registered(account.id):
                continue
            await self._launch(account, server_url)

        for account_id in stop_ids:
            await self.manager.stop(account_id)
            await self.client.report_status(account_id, AccountStatus.STOPPED)

        for account_id in await self.manager.health_check():
            await self.client.report_status(account_id, AccountStatus.ERROR)

    async def _launch(self, account: PendingAccount, server_url: str) -> None:
        await self.client.report_status(account.id, AccountStatus.STARTING)
        try:
            await self.manager.launch(
                account.id,
                credentials_for(account),
                plugin_config_for(account, server_url),
            )
        except Exception as e:
            self.logger.error("Launch failed", account_id=account.id,
                              error=str(e), error_type=type(e).__name__)
            await self.client.report_status(account.id, AccountStatus.ERROR)
            return
        await self.client.report_status(account.id, AccountStatus.RUNNING)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Poll until ``shutdown_event`` is set, then stop every instance."""
        self.logger.info("Agent poll loop started",
                         coordinator_url=self.settings.coordinator_url,
                         poll_interval_seconds=self.settings.poll_interval_seconds)

        while not shutdown_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                if self.metrics:
                    self.metrics.record_poll_error(type(e).__name__)
                self.error_logger.error("Poll tick failed", **create_error_context(e, "poll_tick"))
            self.ticks += 1

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

        await self.shutdown()

    async def shutdown(self) -> None:
        """Stop every local terminal. No status is reported, so accounts keep
        their last reported status on the coordinator."""
        self.logger.info("Agent shutting down, stopping instances")
        stopped = await self.manager.stop_all(self.settings.shutdown_grace_seconds)
        self.logger.info("Agent stopped", instances_stopped=len(stopped))
