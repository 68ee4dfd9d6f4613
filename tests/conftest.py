"""
Pytest configuration and shared fixtures for CopyTrader tests.
"""
import itertools
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from core.config.settings import (
    AgentSettings,
    CoordinatorSettings,
    CredentialSettings,
    DatabaseSettings,
    InstanceSettings,
    LoggingSettings,
    Settings,
)
from core.database.connection import DatabaseManager
from core.utils.exceptions import CommandError
from services.instances.process_control import CommandResult

AGENT_SECRET = "test-agent-secret"
ENCRYPTION_SECRET = "0123456789abcdef0123456789abcdef"
PUBLISH_URL = "https://relay.example.test"


async def no_sleep(_seconds: float) -> None:
    """Zero-delay stand-in for asyncio.sleep"""
    return None


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    """Records commands instead of executing them.

    ``failures`` maps an executable name to the CommandError it raises.
    When ``terminal_relpath`` is given, the silent installer creates the
    terminal executable inside the WINEPREFIX it was run against.
    """

    def __init__(self, terminal_relpath: Optional[Path] = None):
        self.calls: List[dict] = []
        self.failures: Dict[str, CommandError] = {}
        self.terminal_relpath = terminal_relpath

    def fail(self, executable: str, message: str = "failed", timed_out: bool = False) -> None:
        self.failures[executable] = CommandError(
            message, argv=[executable], returncode=None if timed_out else 1, timed_out=timed_out
        )

    def executables(self) -> List[str]:
        return [call["argv"][0] for call in self.calls]

    async def run(self, argv, env=None, timeout=None) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append({"argv": argv, "env": dict(env or {}), "timeout": timeout})
        if argv[0] in self.failures:
            raise self.failures[argv[0]]
        if self.terminal_relpath is not None and "/auto" in argv and env:
            executable = Path(env["WINEPREFIX"]) / self.terminal_relpath
            executable.parent.mkdir(parents=True, exist_ok=True)
            executable.write_text("terminal")
        return CommandResult(argv=argv, returncode=0, stdout="", stderr="")


class FakeProcessControl:
    """In-memory process table with controllable liveness."""

    def __init__(self):
        self._pids = itertools.count(1000)
        self.alive = set()
        self.spawned: List[dict] = []
        self.terminated: List[int] = []
        self.killed: List[int] = []
        self.matched: List[list] = []
        self.reap_calls = 0
        # Pids that ignore SIGTERM
        self.stubborn = set()
        self.spawn_error: Optional[OSError] = None

    def spawn_detached(self, argv, env=None, log_path=None) -> int:
        if self.spawn_error is not None and "/portable" in argv:
            raise self.spawn_error
        pid = next(self._pids)
        self.spawned.append({"pid": pid, "argv": [str(a) for a in argv], "env": env, "log_path": log_path})
        self.alive.add(pid)
        return pid

    def pid_for(self, fragment: str) -> int:
        """Pid of the last spawned process whose argv contains ``fragment``"""
        for entry in reversed(self.spawned):
            if any(fragment in arg for arg in entry["argv"]):
                return entry["pid"]
        raise KeyError(fragment)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int) -> bool:
        self.terminated.append(pid)
        if pid not in self.alive:
            return False
        if pid not in self.stubborn:
            self.alive.discard(pid)
        return True

    def kill(self, pid: int) -> bool:
        self.killed.append(pid)
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        return True

    def kill_matching(self, argv_prefix) -> int:
        prefix = [str(a) for a in argv_prefix]
        self.matched.append(prefix)
        count = 0
        for entry in self.spawned:
            if entry["argv"][:len(prefix)] == prefix and entry["pid"] in self.alive:
                self.alive.discard(entry["pid"])
                count += 1
        return count

    def reap(self) -> List[int]:
        self.reap_calls += 1
        return []


@pytest.fixture
def instance_settings(tmp_path) -> InstanceSettings:
    installer = tmp_path / "mt5setup.exe"
    installer.write_bytes(b"installer")
    plugin = tmp_path / "CopyTrader_Cloud.ex5"
    plugin.write_bytes(b"plugin")
    return InstanceSettings(
        instances_dir=str(tmp_path / "instances"),
        terminal_installer=str(installer),
        plugin_source=str(plugin),
        publish_base_url=PUBLISH_URL,
        display_base=100,
        display_pool_size=200,
    )


@pytest.fixture
def test_settings(tmp_path, instance_settings) -> Settings:
    """Test settings configuration."""
    return Settings(
        environment="testing",
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'coordinator.db'}"),
        credentials=CredentialSettings(encryption_secret=ENCRYPTION_SECRET, salt="test-salt"),
        coordinator=CoordinatorSettings(agent_secret=AGENT_SECRET, publish_base_url=PUBLISH_URL),
        agent=AgentSettings(
            coordinator_url="http://coordinator.test",
            agent_secret=AGENT_SECRET,
            poll_interval_seconds=0.01,
        ),
        instances=instance_settings,
        logging=LoggingSettings(file_enabled=False, console_enabled=False, logs_dir=str(tmp_path / "logs")),
    )


@pytest.fixture
def fake_runner(instance_settings) -> FakeRunner:
    relpath = Path(instance_settings.terminal_dir) / instance_settings.terminal_executable
    return FakeRunner(terminal_relpath=relpath)


@pytest.fixture
def fake_processes() -> FakeProcessControl:
    return FakeProcessControl()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_manager(test_settings):
    """SQLite-backed database manager with the schema created."""
    manager = DatabaseManager(
        db_url=test_settings.database.url,
        environment="testing",
        schema_management="create_all",
    )
    await manager.init()
    yield manager
    await manager.shutdown()
