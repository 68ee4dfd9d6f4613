# Dependency injection containers for the coordinator (API) and agent processes
from dependency_injector import containers, providers
import asyncio
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.metrics import AgentMetrics, CoordinatorMetrics
from services.auth.credentials import CredentialCipher
from services.coordinator.service import CoordinatorService
from services.relay.service import TradeRelayService
from services.agent.client import CoordinatorClient
from services.agent.service import AgentService
from services.instances import (
    CommandRunner,
    DisplayAllocator,
    EnvironmentProvisioner,
    InstanceLifecycleManager,
    InstanceRegistry,
    ProcessControl,
)


class CoordinatorContainer(containers.DeclarativeContainer):
    """Providers for the coordinator API process"""

    # Configuration
    settings = providers.Singleton(Settings)

    # Shared registry used by the /metrics endpoint
    prometheus_registry = providers.Singleton(CollectorRegistry)
    metrics = providers.Singleton(CoordinatorMetrics, registry=prometheus_registry)

    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.url,
        environment=settings.provided.environment,
        schema_management=settings.provided.database.schema_management,
        echo=settings.provided.database.echo,
    )

    cipher = providers.Singleton(
        CredentialCipher,
        settings=settings.provided.credentials,
    )

    coordinator_service = providers.Singleton(
        CoordinatorService,
        db_manager=db_manager,
        cipher=cipher,
        settings=settings.provided.coordinator,
        metrics=metrics,
    )

    relay_service = providers.Singleton(
        TradeRelayService,
        db_manager=db_manager,
        settings=settings.provided.coordinator,
        metrics=metrics,
    )


class AgentContainer(containers.DeclarativeContainer):
    """Providers for the per-host agent process"""

    settings = providers.Singleton(Settings)

    prometheus_registry = providers.Singleton(CollectorRegistry)
    metrics = providers.Singleton(AgentMetrics, registry=prometheus_registry)

    # Shutdown event for graceful loop exit
    shutdown_event = providers.Singleton(asyncio.Event)

    # Host-local process and display bookkeeping
    registry = providers.Singleton(InstanceRegistry)
    allocator = providers.Singleton(
        DisplayAllocator,
        base=settings.provided.instances.display_base,
        pool_size=settings.provided.instances.display_pool_size,
    )
    runner = providers.Singleton(CommandRunner)
    processes = providers.Singleton(ProcessControl)

    provisioner = providers.Singleton(
        EnvironmentProvisioner,
        settings=settings.provided.instances,
        runner=runner,
        processes=processes,
        allocator=allocator,
    )

    lifecycle_manager = providers.Singleton(
        InstanceLifecycleManager,
        settings=settings.provided.instances,
        provisioner=provisioner,
        processes=processes,
        registry=registry,
        allocator=allocator,
        metrics=metrics,
    )

    coordinator_client = providers.Singleton(
        CoordinatorClient,
        settings=settings.provided.agent,
    )

    agent_service = providers.Singleton(
        AgentService,
        settings=settings.provided.agent,
        client=coordinator_client,
        manager=lifecycle_manager,
        metrics=metrics,
        publish_base_url=settings.provided.instances.publish_base_url,
    )
