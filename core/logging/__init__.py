# Enhanced structured logging with multi-channel support
from typing import Optional, Dict, Any

import structlog

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_agent_logger_safe,
    get_instances_logger_safe,
    get_relay_logger_safe,
    get_api_logger_safe,
    get_audit_logger_safe,
    get_error_logger_safe,
    get_database_logger_safe,
)


def configure_logging(settings: Settings) -> None:
    """Configure the logging system once per process."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def bind_tenant_context(logger: structlog.BoundLogger, tenant_id: int,
                        display: Optional[int] = None) -> structlog.BoundLogger:
    """Bind tenant context consistently to a logger."""
    ctx: Dict[str, Any] = {"tenant_id": tenant_id}
    if display is not None:
        ctx["display"] = display
    return logger.bind(**ctx)


__all__ = [
    "LogChannel",
    "configure_logging",
    "get_logger",
    "get_channel_logger",
    "bind_tenant_context",
    "get_agent_logger_safe",
    "get_instances_logger_safe",
    "get_relay_logger_safe",
    "get_api_logger_safe",
    "get_audit_logger_safe",
    "get_error_logger_safe",
    "get_database_logger_safe",
]
