"""
Logging channel definitions and configuration for CopyTrader Cloud.
Provides multi-channel logging with dedicated files for different components.
"""

from enum import Enum
from typing import Dict, Optional
from pathlib import Path
from dataclasses import dataclass


class LogChannel(str, Enum):
    """Logging channels for different components."""

    APPLICATION = "application"  # General application logs
    AGENT = "agent"              # Control-plane poll loop
    INSTANCES = "instances"      # Provisioning and terminal lifecycle
    RELAY = "relay"              # Push/fetch reconciliation
    DATABASE = "database"        # Database operations
    API = "api"                  # API requests/responses
    AUDIT = "audit"              # Owner actions and account changes
    ERROR = "error"              # Error logs


@dataclass
class ChannelConfig:
    """Configuration for a logging channel."""

    name: str
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5
    json_format: bool = True
    retention_days: Optional[int] = None

    def get_file_path(self, logs_dir: str) -> Path:
        """Get the full file path for this channel."""
        return Path(logs_dir) / self.filename


# Channel configurations
CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig(
        name="application",
        filename="application.log",
        max_bytes="100MB",
        backup_count=10,
        retention_days=30
    ),
    LogChannel.AGENT: ChannelConfig(
        name="agent",
        filename="agent.log",
        backup_count=10,
        retention_days=30
    ),
    LogChannel.INSTANCES: ChannelConfig(
        name="instances",
        filename="instances.log",
        backup_count=20,
        retention_days=90
    ),
    LogChannel.RELAY: ChannelConfig(
        name="relay",
        filename="relay.log",
        max_bytes="200MB",  # Every publish cycle lands here
        backup_count=5,
        retention_days=14
    ),
    LogChannel.DATABASE: ChannelConfig(
        name="database",
        filename="database.log",
        level="WARNING",    # Only warnings and errors
        retention_days=30
    ),
    LogChannel.API: ChannelConfig(
        name="api",
        filename="api.log",
        backup_count=10,
        retention_days=30
    ),
    LogChannel.AUDIT: ChannelConfig(
        name="audit",
        filename="audit.log",
        max_bytes="100MB",
        backup_count=50,
        retention_days=365
    ),
    LogChannel.ERROR: ChannelConfig(
        name="error",
        filename="error.log",
        level="ERROR",
        backup_count=20,
        retention_days=90
    ),
}


def get_channel_for_component(component: str) -> LogChannel:
    """Get the appropriate logging channel for a component."""
    component_mapping = {
        "agent": LogChannel.AGENT,
        "coordinator_client": LogChannel.AGENT,
        "instances": LogChannel.INSTANCES,
        "provisioner": LogChannel.INSTANCES,
        "lifecycle": LogChannel.INSTANCES,
        "relay": LogChannel.RELAY,
        "database": LogChannel.DATABASE,
        "api": LogChannel.API,
        "coordinator": LogChannel.API,
        "audit": LogChannel.AUDIT,
    }

    return component_mapping.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    """Get configuration for a specific channel."""
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    """Create the logs directory."""
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
