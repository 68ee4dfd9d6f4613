# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional, Any
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Global flag to prevent duplicate configuration
_enhanced_logging_configured = False


class ChannelFilter(logging.Filter):
    """Filter that routes records to a handler only if they match a channel.

    If the record has a structured `channel` attribute, it must match `expected_channel`.
    If not present, allow selected third-party logger name prefixes (e.g., uvicorn/fastapi) when provided.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        ch = getattr(record, "channel", None)
        if ch is None and isinstance(record.msg, dict):
            ch = record.msg.get("channel")
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        for prefix in self.allowed_logger_prefixes:
            if name.startswith(prefix):
                return True
        return False


def redact_event(event_dict: Dict[str, Any], keys_to_redact: set) -> Dict[str, Any]:
    """Recursively replace values of sensitive keys."""

    def _redact(obj):
        if isinstance(obj, dict):
            out = {}
            for k, v in obj.items():
                if isinstance(k, str) and k.lower() in keys_to_redact:
                    out[k] = '[REDACTED]'
                else:
                    out[k] = _redact(v)
            return out
        if isinstance(obj, list):
            return [_redact(v) for v in obj]
        return obj

    return _redact(event_dict)


class EnhancedLoggerManager:
    """Enhanced logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        """Setup enhanced logging with configurable formats."""
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        self._configure_structlog()

    def _foreign_chain(self) -> list:
        return [
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
        ]

    def _file_processor(self):
        if self.settings.logging.json_format:
            return structlog.processors.JSONRenderer()
        return structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        level = getattr(logging, self.settings.logging.level.upper())
        root_logger.setLevel(level)

        if not self.settings.logging.console_enabled:
            return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=console_processor,
                foreign_pre_chain=self._foreign_chain(),
            )
        )
        root_logger.addHandler(console_handler)

    def _setup_file_logging(self) -> None:
        """Setup the combined service log file."""
        log_file = Path(self.settings.logs_dir) / "copytrader.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return  # File handler already configured

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(getattr(logging, self.settings.logging.level.upper()))
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_chain(),
            )
        )
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        if not self.settings.logging.file_enabled:
            return

        for channel in LogChannel:
            config = get_channel_config(channel)
            self.channel_handlers[channel] = self._create_channel_handler(channel, config)

        # API channel -> uvicorn/fastapi loggers
        api_handler = self.channel_handlers.get(LogChannel.API)
        if api_handler:
            for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
                logger = logging.getLogger(name)
                if api_handler not in logger.handlers:
                    logger.addHandler(api_handler)

        # ERROR channel -> root, captures all ERROR+ records
        error_handler = self.channel_handlers.get(LogChannel.ERROR)
        if error_handler:
            root_logger = logging.getLogger()
            if error_handler not in root_logger.handlers:
                root_logger.addHandler(error_handler)

        # DATABASE channel -> SQLAlchemy loggers
        db_handler = self.channel_handlers.get(LogChannel.DATABASE)
        if db_handler:
            for name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
                lg = logging.getLogger(name)
                if db_handler not in lg.handlers:
                    lg.addHandler(db_handler)
                if lg.level == logging.NOTSET:
                    lg.setLevel(logging.WARNING)
                lg.propagate = False

        # AGENT channel -> httpx transport logs
        agent_handler = self.channel_handlers.get(LogChannel.AGENT)
        if agent_handler:
            lg = logging.getLogger("httpx")
            if agent_handler not in lg.handlers:
                lg.addHandler(agent_handler)
            if lg.level == logging.NOTSET:
                lg.setLevel(logging.WARNING)

    def _create_channel_handler(self, channel: LogChannel, config) -> logging.Handler:
        """Create a file handler for a specific channel."""
        handler = logging.handlers.RotatingFileHandler(
            filename=config.get_file_path(self.settings.logs_dir),
            maxBytes=self._parse_size(config.max_bytes),
            backupCount=config.backup_count,
            encoding="utf-8"
        )
        handler.setLevel(getattr(logging, config.level))
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_chain(),
            )
        )
        allowed_prefixes = []
        if channel == LogChannel.API:
            allowed_prefixes = ["uvicorn", "fastapi", "starlette"]
        elif channel == LogChannel.DATABASE:
            allowed_prefixes = ["sqlalchemy"]
        elif channel == LogChannel.AGENT:
            allowed_prefixes = ["httpx"]
        # Error handler sits on root and keeps everything ERROR+
        if channel != LogChannel.ERROR:
            handler.addFilter(ChannelFilter(expected_channel=channel.value, allowed_logger_prefixes=allowed_prefixes))

        return handler

    def _parse_size(self, size_str: str) -> int:
        """Parse size string (e.g., '100MB') to bytes."""
        size_str = size_str.upper()

        if size_str.endswith("B"):
            size_str = size_str[:-1]

        multipliers = {
            "K": 1024,
            "M": 1024 * 1024,
            "G": 1024 * 1024 * 1024,
        }

        for suffix, multiplier in multipliers.items():
            if size_str.endswith(suffix):
                return int(float(size_str[:-1]) * multiplier)

        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with appropriate processors."""
        keys_to_redact = {k.lower() for k in self.settings.logging.redact_keys}

        def add_standard_context(logger, name, event_dict):
            """Bind standard context fields once from settings."""
            event_dict.setdefault('env', str(getattr(self.settings.environment, 'value', self.settings.environment)))
            event_dict.setdefault('service', self.settings.app_name)
            event_dict.setdefault('version', self.settings.version)
            return event_dict

        def redact_sensitive(logger, name, event_dict):
            return redact_event(event_dict, keys_to_redact)

        processors = [
            structlog.contextvars.merge_contextvars,
            add_standard_context,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            # Defer final rendering to handlers via ProcessorFormatter
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ]

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        """Get a structured logger for a component."""
        if name in self.configured_loggers:
            return self.configured_loggers[name]

        logger = structlog.get_logger(name)

        if component:
            channel = get_channel_for_component(component)
            logger = logger.bind(component=component, channel=channel.value)

        self.configured_loggers[name] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.BoundLogger:
        """Get a logger for a specific channel."""
        return structlog.get_logger(name).bind(channel=channel.value)


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system."""
    global _logger_manager, _enhanced_logging_configured

    if _enhanced_logging_configured:
        return

    _logger_manager = EnhancedLoggerManager(settings)
    _enhanced_logging_configured = True


def _fallback_configure() -> None:
    """Basic structlog configuration used before configure_enhanced_logging runs."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    if _logger_manager is None:
        if not structlog.is_configured():
            _fallback_configure()
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger

    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    """Get a logger for a specific channel."""
    if _logger_manager is None:
        return get_enhanced_logger(name).bind(channel=channel.value)

    return _logger_manager.get_channel_logger(name, channel)


def get_agent_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a control-plane logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.AGENT)
    except Exception:
        return get_enhanced_logger(name, "agent")


def get_instances_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a provisioning/lifecycle logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.INSTANCES)
    except Exception:
        return get_enhanced_logger(name, "instances")


def get_relay_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a reconciliation logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.RELAY)
    except Exception:
        return get_enhanced_logger(name, "relay")


def get_api_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an API logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.API)
    except Exception:
        return get_enhanced_logger(name, "api")


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an audit logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.AUDIT)
    except Exception:
        return get_enhanced_logger(name, "audit")


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.ERROR)
    except Exception:
        return get_enhanced_logger(name, "error")


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a database logger with safe fallback."""
    try:
        return get_channel_logger(name, LogChannel.DATABASE)
    except Exception:
        return get_enhanced_logger(name, "database")
