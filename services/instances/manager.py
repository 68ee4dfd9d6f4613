"""
Instance lifecycle manager.

Per tenant: ``stopped -> starting -> running -> stopping -> stopped``, with
``error`` reachable from any state. Launch and stop for one tenant are
serialized by a per-tenant lock; the registry holds at most one instance
per tenant.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

from core.config.settings import InstanceSettings
from core.logging import get_instances_logger_safe, get_error_logger_safe, bind_tenant_context
from core.monitoring.metrics import AgentMetrics
from core.utils.exceptions import ProvisioningError, TeardownError, create_error_context
from .display import DisplayAllocator
from .models import InstanceState, InstanceStatus, PluginConfig, RuntimeInstance, TerminalCredentials
from .process_control import ProcessControl
from .provisioner import EnvironmentProvisioner
from .registry import InstanceRegistry

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class InstanceLifecycleManager:
    def __init__(self, settings: InstanceSettings, provisioner: EnvironmentProvisioner,
                 processes: ProcessControl, registry: InstanceRegistry,
                 allocator: DisplayAllocator, metrics: Optional[AgentMetrics] = None,
                 sleep: Sleep = asyncio.sleep, clock: Clock = time.time):
        self.settings = settings
        self.provisioner = provisioner
        self.processes = processes
        self.registry = registry
        self.allocator = allocator
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._locks: Dict[int, asyncio.Lock] = {}
        self._states: Dict[int, InstanceState] = {}
        self.logger = get_instances_logger_safe("instances.lifecycle")
        self.error_logger = get_error_logger_safe("instances.lifecycle")

    def _lock_for(self, tenant_id: int) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _set_state(self, tenant_id: int, state: InstanceState) -> None:
        self._states[tenant_id] = state

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_registered(len(self.registry))

    def is_registered(self, tenant_id: int) -> bool:
        return tenant_id in self.registry

    async def launch(self, tenant_id: int, credentials: TerminalCredentials,
                     config: PluginConfig) -> RuntimeInstance:
        """Provision and start the tenant's terminal.

        An already registered instance is fully stopped first. Raises
        ProvisioningError if any step fails; the tenant is left in
        ``error`` with nothing registered.
        """
        async with self._lock_for(tenant_id):
            log = bind_tenant_context(self.logger, tenant_id)
            if tenant_id in self.registry:
                log.info("Instance already registered, stopping before relaunch")
                await self._stop_locked(tenant_id, reason="relaunch")
                await self._sleep(self.settings.relaunch_settle_seconds)

            self._set_state(tenant_id, InstanceState.STARTING)
            launch_started = self._clock()
            display = None
            try:
                self.provisioner.tenant_dir(tenant_id).mkdir(parents=True, exist_ok=True)
                display = await self.provisioner.ensure_display(tenant_id)
                await self.provisioner.ensure_runtime_bootstrap(tenant_id, display)
                await self.provisioner.ensure_terminal_installed(tenant_id, display)
                self.provisioner.write_login_config(tenant_id, credentials)
                self.provisioner.deploy_trading_plugin(tenant_id, config)
                pid = self._spawn_terminal(tenant_id, display)
            except Exception as e:
                self._set_state(tenant_id, InstanceState.ERROR)
                await self._cleanup_failed_launch(tenant_id, display)
                if self.metrics:
                    self.metrics.record_launch("error", self._clock() - launch_started)
                error = e if isinstance(e, ProvisioningError) else ProvisioningError(
                    f"Launch failed: {e}", tenant_id=tenant_id, step="launch"
                )
                self.error_logger.error("Instance launch failed",
                                        **create_error_context(error, "launch"))
                if error is e:
                    raise
                raise error from e

            instance = RuntimeInstance(
                tenant_id=tenant_id,
                pid=pid,
                display=display,
                root=self.provisioner.runtime_root(tenant_id),
                started_at=self._clock(),
            )
            self.registry.register(instance)
            self._update_gauge()

            # Login cannot be observed; give the terminal time to settle
            await self._sleep(self.settings.launch_settle_seconds)
            self._set_state(tenant_id, InstanceState.RUNNING)
            if self.metrics:
                self.metrics.record_launch("ok", self._clock() - launch_started)
            bind_tenant_context(log, tenant_id, display).info("Instance running", pid=pid)
            return instance

    def _spawn_terminal(self, tenant_id: int, display: int) -> int:
        argv = [
            self.settings.runtime_binary,
            str(self.provisioner.terminal_executable(tenant_id)),
            "/portable",
        ]
        try:
            return self.processes.spawn_detached(
                argv,
                env=self.provisioner.runtime_env(tenant_id, display),
                log_path=self.provisioner.terminal_log(tenant_id),
            )
        except OSError as e:
            raise ProvisioningError(
                f"Cannot start terminal: {e}", tenant_id=tenant_id, step="spawn"
            ) from e

    async def _cleanup_failed_launch(self, tenant_id: int, display: Optional[int]) -> None:
        if display is not None:
            await self._attempt(tenant_id, "runtime", self.provisioner.teardown_runtime(tenant_id))
            await self._attempt(tenant_id, "display", self._async_call(self.provisioner.teardown_display, display))
        self.allocator.release(tenant_id)

    async def stop(self, tenant_id: int, reason: str = "requested") -> bool:
        """Stop the tenant's terminal. Returns False if nothing was registered."""
        async with self._lock_for(tenant_id):
            return await self._stop_locked(tenant_id, reason=reason)

    async def _stop_locked(self, tenant_id: int, reason: str) -> bool:
        instance = self.registry.get(tenant_id)
        log = bind_tenant_context(self.logger, tenant_id)

        if instance is None:
            # An instance from before an agent restart is not registered
            # but may still be bound to the runtime root
            if self.provisioner.runtime_root(tenant_id).exists():
                await self._attempt(tenant_id, "runtime", self.provisioner.teardown_runtime(tenant_id))
            self.allocator.release(tenant_id)
            self._set_state(tenant_id, InstanceState.STOPPED)
            log.info("Stop requested for unregistered tenant", reason=reason)
            return False

        self._set_state(tenant_id, InstanceState.STOPPING)
        try:
            await self._attempt(tenant_id, "process", self._terminate_process(instance.pid))
            await self._attempt(tenant_id, "runtime", self.provisioner.teardown_runtime(tenant_id))
            await self._attempt(tenant_id, "display",
                                self._async_call(self.provisioner.teardown_display, instance.display))
        finally:
            self.registry.remove(tenant_id)
            self.allocator.release(tenant_id)
            self._set_state(tenant_id, InstanceState.STOPPED)
            self._update_gauge()

        if self.metrics:
            self.metrics.record_stop(reason)
        bind_tenant_context(log, tenant_id, instance.display).info(
            "Instance stopped", pid=instance.pid, reason=reason
        )
        return True

    async def _terminate_process(self, pid: int) -> None:
        if not self.processes.terminate(pid):
            return
        await self._sleep(self.settings.stop_grace_seconds)
        if self.processes.is_alive(pid):
            self.processes.kill(pid)

    @staticmethod
    async def _async_call(func, *args):
        # Off the event loop; teardown may wait for a child to exit
        return await asyncio.to_thread(func, *args)

    async def _attempt(self, tenant_id: int, action: str, operation: Awaitable) -> bool:
        """Run one teardown action; failures are logged and never propagate."""
        try:
            await operation
            return True
        except Exception as e:
            error = TeardownError(f"Teardown action {action} failed: {e}", tenant_id=tenant_id, action=action)
            bind_tenant_context(self.logger, tenant_id).warning(
                "Teardown action failed", **create_error_context(error, "stop", {"action": action})
            )
            return False

    def status(self, tenant_id: int) -> InstanceStatus:
        instance = self.registry.get(tenant_id)
        state = self._states.get(tenant_id, InstanceState.STOPPED)
        if instance is None:
            return InstanceStatus(tenant_id=tenant_id, state=state, running=False)
        return InstanceStatus(
            tenant_id=tenant_id,
            state=state,
            running=True,
            pid=instance.pid,
            display=instance.display,
            uptime_seconds=instance.uptime(self._clock()),
        )

    def statuses(self) -> List[InstanceStatus]:
        return [self.status(tenant_id) for tenant_id in self.registry.tenant_ids()]

    async def health_check(self) -> List[int]:
        """Deregister every registered terminal whose process is gone and
        release its display.

        Returns the affected tenant ids. Nothing is relaunched.
        """
        self.processes.reap()
        dead = []
        for tenant_id, instance in self.registry.items():
            if self._lock_for(tenant_id).locked():
                continue
            if self.processes.is_alive(instance.pid):
                continue
            self.registry.remove(tenant_id)
            await self._attempt(tenant_id, "display",
                                self._async_call(self.provisioner.teardown_display, instance.display))
            self.allocator.release(tenant_id)
            self._set_state(tenant_id, InstanceState.ERROR)
            if self.metrics:
                self.metrics.record_health_failure()
            bind_tenant_context(self.logger, tenant_id, instance.display).warning(
                "Instance process is gone, marking error", pid=instance.pid
            )
            dead.append(tenant_id)
        if dead:
            self._update_gauge()
        return dead

    async def stop_all(self, timeout_per_instance: float) -> List[int]:
        """Stop every registered instance, each bounded by a timeout."""
        stopped = []
        for tenant_id in self.registry.tenant_ids():
            try:
                await asyncio.wait_for(self.stop(tenant_id, reason="shutdown"), timeout=timeout_per_instance)
            except asyncio.TimeoutError:
                self.registry.remove(tenant_id)
                self.allocator.release(tenant_id)
                self._update_gauge()
                bind_tenant_context(self.logger, tenant_id).error(
                    "Timed out stopping instance during shutdown", timeout=timeout_per_instance
                )
            stopped.append(tenant_id)
        return stopped
