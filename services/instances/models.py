from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, SecretStr

from core.schemas.control_plane import AccountRole, LotMode


class InstanceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class TerminalCredentials(BaseModel):
    """Broker login handed to the terminal's auto-login block"""
    login: str
    password: SecretStr
    server: str


class PluginConfig(BaseModel):
    """Parameters for the trading plugin attached to the terminal chart"""
    role: AccountRole = AccountRole.SLAVE
    server_url: str = ""
    channel_code: str = ""
    master_key: str = Field(default="", repr=False)
    lot_mode: LotMode = LotMode.MIRROR
    fixed_lot: float = 0.01
    risk_pct: float = 1.0
    master_balance: float = 10000.0
    user_name: str = ""


@dataclass
class RuntimeInstance:
    """A launched terminal, tracked by tenant id rather than by process object"""
    tenant_id: int
    pid: int
    display: int
    root: Path
    started_at: float

    def uptime(self, now: float) -> float:
        return max(0.0, now - self.started_at)


@dataclass
class InstanceStatus:
    tenant_id: int
    state: InstanceState
    running: bool
    pid: Optional[int] = None
    display: Optional[int] = None
    uptime_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "running": self.running,
            "pid": self.pid,
            "display": f":{self.display}" if self.display is not None else None,
            "uptime_seconds": self.uptime_seconds,
        }
