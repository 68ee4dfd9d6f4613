"""
Configuration validation at application startup.

Validates that the values each role depends on are present before the
coordinator or agent starts, with clear error messages for what is missing.
Values are checked for presence only; their contents are treated as given.
"""

import logging
from pathlib import Path
from typing import List
from dataclasses import dataclass

from .settings import Settings

logger = logging.getLogger(__name__)

COORDINATOR = "coordinator"
AGENT = "agent"

MIN_ENCRYPTION_SECRET_LENGTH = 32


@dataclass
class ValidationResult:
    """Result of a configuration validation check"""
    is_valid: bool
    component: str
    message: str
    severity: str = "error"  # "error", "warning", "info"


class ConfigurationValidator:
    """Presence checks for coordinator and agent configuration."""

    def __init__(self, settings: Settings, role: str):
        if role not in (COORDINATOR, AGENT):
            raise ValueError(f"Unknown role: {role}")
        self.settings = settings
        self.role = role
        self.validation_results: List[ValidationResult] = []

    def validate_all(self) -> bool:
        """
        Run all validation checks for the configured role.

        Returns:
            bool: True if no error-level check failed
        """
        self.validation_results = []
        logger.info(f"Validating {self.role} configuration")

        self._validate_logging_settings()
        if self.role == COORDINATOR:
            self._validate_coordinator_settings()
        else:
            self._validate_agent_settings()
            self._validate_instance_paths()

        errors = self.errors
        warnings = [r for r in self.validation_results if r.severity == "warning"]

        if errors:
            logger.error(f"Configuration validation failed: {len(errors)} errors, {len(warnings)} warnings")
            for result in errors:
                logger.error(f"   ERROR [{result.component}]: {result.message}")

        for result in warnings:
            logger.warning(f"   WARNING [{result.component}]: {result.message}")

        if not errors:
            logger.info(f"Configuration validation passed with {len(warnings)} warnings")

        return not errors

    @property
    def errors(self) -> List[ValidationResult]:
        return [r for r in self.validation_results if r.severity == "error"]

    def _add(self, component: str, message: str, severity: str = "error") -> None:
        self.validation_results.append(ValidationResult(
            is_valid=severity not in ("error", "warning"),
            component=component,
            message=message,
            severity=severity,
        ))

    def _validate_logging_settings(self):
        logs_dir = Path(self.settings.logs_dir)
        if self.settings.logging.file_enabled and not logs_dir.resolve().parent.exists():
            self._add("Logging", f"Parent directory for logs does not exist: {logs_dir.parent}")

    def _validate_coordinator_settings(self):
        secret = self.settings.credentials.encryption_secret
        if len(secret) < MIN_ENCRYPTION_SECRET_LENGTH:
            self._add(
                "Credentials",
                f"CREDENTIALS__ENCRYPTION_SECRET must be at least {MIN_ENCRYPTION_SECRET_LENGTH} characters",
            )
        if not self.settings.coordinator.agent_secret:
            self._add(
                "Coordinator",
                "COORDINATOR__AGENT_SECRET not set - running web-only, agent endpoints disabled",
                severity="warning",
            )
        if not self.settings.database.url:
            self._add("Database", "DATABASE__URL is required")
        if self.settings.environment == "production" and \
                self.settings.auth.secret_key == "your-secret-key-change-in-production":
            self._add("Auth", "Default AUTH__SECRET_KEY must not be used in production")

    def _validate_agent_settings(self):
        if not self.settings.agent.agent_secret:
            self._add("Agent", "AGENT__AGENT_SECRET is required")
        if not self.settings.agent.coordinator_url:
            self._add("Agent", "AGENT__COORDINATOR_URL is required")
        if self.settings.agent.poll_interval_seconds <= 0:
            self._add("Agent", "AGENT__POLL_INTERVAL_SECONDS must be positive")

    def _validate_instance_paths(self):
        instances = self.settings.instances
        if not instances.instances_dir:
            self._add("Instances", "INSTANCES__INSTANCES_DIR is required")
        if not instances.terminal_installer:
            self._add("Instances", "INSTANCES__TERMINAL_INSTALLER is required")
        elif not Path(instances.terminal_installer).exists():
            self._add(
                "Instances",
                f"Terminal installer not found: {instances.terminal_installer}",
                severity="warning",
            )
        if not instances.plugin_source:
            self._add("Instances", "INSTANCES__PLUGIN_SOURCE is required")
        elif not Path(instances.plugin_source).exists():
            self._add(
                "Instances",
                f"Trading plugin not found, terminals will start without it: {instances.plugin_source}",
                severity="warning",
            )
        if not instances.publish_base_url:
            self._add("Instances", "INSTANCES__PUBLISH_BASE_URL is required")


def validate_startup_configuration(settings: Settings, role: str) -> bool:
    """Convenience wrapper used by the entrypoints."""
    return ConfigurationValidator(settings, role).validate_all()
