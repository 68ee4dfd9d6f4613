"""
Environment provisioner: brings a tenant's isolated runtime root from
nonexistent to "terminal installed and configured".

Per-tenant layout under ``instances_dir``::

    <tenant>/wine/                      isolated runtime root (WINEPREFIX)
    <tenant>/wine/.initialized          bootstrap marker
    <tenant>/wine/<terminal_dir>/       terminal install, ini files, plugin
    <tenant>/logs/terminal.log          terminal stdout/stderr

Every step is idempotent. Bootstrap and install failures raise
``ProvisioningError``; optional components only log.
"""

import asyncio
import os
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict

from core.config.settings import InstanceSettings
from core.logging import get_instances_logger_safe, bind_tenant_context
from core.utils.exceptions import CommandError, ProvisioningError
from .display import DisplayAllocator
from .models import PluginConfig, TerminalCredentials
from .process_control import CommandRunner, ProcessControl
from .terminal_files import (
    AUTOSTART_CONFIG_NAME,
    LOGIN_CONFIG_NAME,
    render_autostart_config,
    render_login_config,
    render_plugin_parameters,
)

BOOTSTRAP_MARKER = ".initialized"

Sleep = Callable[[float], Awaitable[None]]


class EnvironmentProvisioner:
    def __init__(self, settings: InstanceSettings, runner: CommandRunner,
                 processes: ProcessControl, allocator: DisplayAllocator,
                 sleep: Sleep = asyncio.sleep):
        self.settings = settings
        self.runner = runner
        self.processes = processes
        self.allocator = allocator
        self._sleep = sleep
        self.logger = get_instances_logger_safe("instances.provisioner")

    # --- Layout ---

    def tenant_dir(self, tenant_id: int) -> Path:
        return Path(self.settings.instances_dir) / str(tenant_id)

    def runtime_root(self, tenant_id: int) -> Path:
        return self.tenant_dir(tenant_id) / "wine"

    def terminal_dir(self, tenant_id: int) -> Path:
        return self.runtime_root(tenant_id) / self.settings.terminal_dir

    def terminal_executable(self, tenant_id: int) -> Path:
        return self.terminal_dir(tenant_id) / self.settings.terminal_executable

    def terminal_log(self, tenant_id: int) -> Path:
        return self.tenant_dir(tenant_id) / "logs" / "terminal.log"

    def runtime_env(self, tenant_id: int, display: int) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "WINEPREFIX": str(self.runtime_root(tenant_id)),
            "DISPLAY": f":{display}",
            "WINEDEBUG": "-all",
        })
        return env

    def display_server_argv(self, display: int) -> list:
        return [self.settings.display_server_binary, f":{display}"]

    # --- Steps ---

    async def ensure_display(self, tenant_id: int) -> int:
        """Allocate a display, replace any stale server on it, start a fresh one."""
        display = self.allocator.allocate(tenant_id)
        log = bind_tenant_context(self.logger, tenant_id, display)

        stale = self.processes.kill_matching(self.display_server_argv(display))
        if stale:
            log.info("Terminated stale display server", count=stale)
        await self._sleep(self.settings.stale_display_settle_seconds)

        argv = self.display_server_argv(display) + ["-screen", "0", self.settings.display_geometry]
        try:
            pid = self.processes.spawn_detached(argv)
        except OSError as e:
            self.allocator.release(tenant_id)
            raise ProvisioningError(
                f"Cannot start display server: {e}", tenant_id=tenant_id, step="display"
            ) from e

        await self._sleep(self.settings.display_settle_seconds)
        log.info("Display server started", pid=pid)
        return display

    async def ensure_runtime_bootstrap(self, tenant_id: int, display: int) -> bool:
        """One-time runtime initialization. Returns False if already done."""
        root = self.runtime_root(tenant_id)
        marker = root / BOOTSTRAP_MARKER
        if marker.exists():
            return False

        log = bind_tenant_context(self.logger, tenant_id, display)
        log.info("Bootstrapping runtime root", root=str(root))
        root.mkdir(parents=True, exist_ok=True)
        env = self.runtime_env(tenant_id, display)

        try:
            await self.runner.run(
                [self.settings.bootstrap_binary, "--init"],
                env=env,
                timeout=self.settings.bootstrap_timeout_seconds,
            )
        except CommandError as e:
            raise ProvisioningError(
                f"Runtime bootstrap failed: {e.message}", tenant_id=tenant_id, step="bootstrap"
            ) from e

        if self.settings.optional_components:
            try:
                await self.runner.run(
                    [self.settings.components_binary, "-q", *self.settings.optional_components],
                    env=env,
                    timeout=self.settings.components_timeout_seconds,
                )
            except CommandError as e:
                log.warning("Optional runtime components not installed",
                            components=self.settings.optional_components,
                            error=e.message, timed_out=e.timed_out)

        marker.write_text(str(int(time.time())))
        log.info("Runtime root bootstrapped")
        return True

    async def ensure_terminal_installed(self, tenant_id: int, display: int) -> bool:
        """Silent install of the terminal. Returns False if already installed."""
        executable = self.terminal_executable(tenant_id)
        if executable.exists():
            return False

        installer = Path(self.settings.terminal_installer)
        if not installer.exists():
            raise ProvisioningError(
                f"Terminal installer not found: {installer}", tenant_id=tenant_id, step="install"
            )

        log = bind_tenant_context(self.logger, tenant_id, display)
        log.info("Installing terminal")
        try:
            await self.runner.run(
                [self.settings.runtime_binary, str(installer), "/auto"],
                env=self.runtime_env(tenant_id, display),
                timeout=self.settings.install_timeout_seconds,
            )
        except CommandError as e:
            raise ProvisioningError(
                f"Terminal install failed: {e.message}", tenant_id=tenant_id, step="install"
            ) from e

        if not executable.exists():
            raise ProvisioningError(
                f"Installer finished but {executable.name} is missing",
                tenant_id=tenant_id, step="install",
            )
        log.info("Terminal installed")
        return True

    def write_login_config(self, tenant_id: int, credentials: TerminalCredentials) -> Path:
        config_dir = self.terminal_dir(tenant_id)
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / LOGIN_CONFIG_NAME
        path.write_text(render_login_config(credentials))
        return path

    def deploy_trading_plugin(self, tenant_id: int, config: PluginConfig) -> bool:
        """Copy the plugin binary and write its parameter and auto-attach files.

        Returns False when the plugin binary is absent and was not copied.
        """
        terminal_dir = self.terminal_dir(tenant_id)
        plugin_name = self.settings.plugin_name

        experts_dir = terminal_dir / "MQL5" / "Experts"
        experts_dir.mkdir(parents=True, exist_ok=True)
        source = Path(self.settings.plugin_source)
        copied = source.exists()
        if copied:
            shutil.copyfile(source, experts_dir / f"{plugin_name}{source.suffix or '.ex5'}")
        else:
            bind_tenant_context(self.logger, tenant_id).warning(
                "Trading plugin binary not found, skipping copy", source=str(source)
            )

        presets_dir = terminal_dir / "MQL5" / "Presets"
        presets_dir.mkdir(parents=True, exist_ok=True)
        (presets_dir / f"{plugin_name}.set").write_text(
            render_plugin_parameters(config, self.settings)
        )
        (terminal_dir / AUTOSTART_CONFIG_NAME).write_text(render_autostart_config(self.settings))
        return copied

    async def teardown_runtime(self, tenant_id: int) -> None:
        """Kill every process still bound to the tenant's runtime root."""
        env = dict(os.environ)
        env["WINEPREFIX"] = str(self.runtime_root(tenant_id))
        await self.runner.run(
            [self.settings.runtime_server_binary, "-k"],
            env=env,
            timeout=self.settings.teardown_timeout_seconds,
        )

    def teardown_display(self, display: int) -> int:
        return self.processes.kill_matching(self.display_server_argv(display))
