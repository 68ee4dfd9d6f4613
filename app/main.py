# Agent process entrypoint

import asyncio
import signal
import sys
from typing import Optional

from core.logging import configure_logging, get_logger
from app.containers import AgentContainer
from core.config.settings import Settings
from core.config.validator import AGENT, validate_startup_configuration


class AgentOrchestrator:
    """Runs the agent poll loop until a shutdown signal arrives."""

    def __init__(self, settings: Optional[Settings] = None):
        self.container = AgentContainer()
        if settings is not None:
            self.container.settings.override(settings)
        self._shutdown_event = asyncio.Event()

        # Provide the shutdown event to the container
        self.container.shutdown_event.override(self._shutdown_event)

        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("copytrader.agent.main", component="agent")

    def startup(self) -> None:
        self.logger.info("Initializing agent",
                         coordinator_url=self.settings.agent.coordinator_url,
                         instances_dir=self.settings.instances.instances_dir)

        if not validate_startup_configuration(self.settings, AGENT):
            self.logger.critical("Agent configuration validation failed, refusing to start")
            sys.exit(1)

        self.logger.info("Configuration validation passed")

    async def shutdown(self) -> None:
        """Close the coordinator client; instances are stopped by the poll loop."""
        try:
            await self.container.coordinator_client().close()
        except Exception as e:
            self.logger.error("Error closing coordinator client", error=str(e))
        self.logger.info("Agent shutdown complete")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        try:
            self.logger.info("Received shutdown signal", signal=signal.strsignal(signum))
            self._shutdown_event.set()
        except Exception as e:
            # Fallback to stderr if logging fails during shutdown
            print(f"Error in signal handler: {e}", file=sys.stderr)
            self._shutdown_event.set()

    async def run(self) -> None:
        """Run the agent until shutdown."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.startup()
        agent_service = self.container.agent_service()
        try:
            await agent_service.run(self._shutdown_event)
        finally:
            await self.shutdown()


async def main():
    """Agent entry point"""
    agent = AgentOrchestrator()
    await agent.run()


if __name__ == "__main__":
    asyncio.run(main())
