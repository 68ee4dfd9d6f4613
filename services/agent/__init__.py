"""Remote agent: polls the coordinator and drives the lifecycle manager."""

from .client import CoordinatorClient
from .service import AgentService

__all__ = ["AgentService", "CoordinatorClient"]
