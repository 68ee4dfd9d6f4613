"""Per-tenant terminal provisioning and lifecycle management."""

from .display import DisplayAllocator
from .manager import InstanceLifecycleManager
from .models import (
    AccountRole,
    InstanceState,
    InstanceStatus,
    LotMode,
    PluginConfig,
    RuntimeInstance,
    TerminalCredentials,
)
from .process_control import CommandResult, CommandRunner, ProcessControl
from .provisioner import EnvironmentProvisioner
from .registry import InstanceRegistry

__all__ = [
    "AccountRole",
    "CommandResult",
    "CommandRunner",
    "DisplayAllocator",
    "EnvironmentProvisioner",
    "InstanceLifecycleManager",
    "InstanceRegistry",
    "InstanceState",
    "InstanceStatus",
    "LotMode",
    "PluginConfig",
    "ProcessControl",
    "RuntimeInstance",
    "TerminalCredentials",
]
