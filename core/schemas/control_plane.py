# Wire schemas shared by the agent and the coordinator control-plane endpoints

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_serializer


class AccountStatus(str, Enum):
    PENDING_VPS = "pending_vps"
    STARTING = "starting"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"
    ERROR = "error"


# Statuses the agent treats as "should be running but not yet confirmed"
LAUNCH_QUEUE_STATUSES = (AccountStatus.PENDING_VPS, AccountStatus.STARTING)


class AccountRole(str, Enum):
    MASTER = "master"
    SLAVE = "slave"

    @property
    def plugin_mode(self) -> int:
        return 0 if self is AccountRole.MASTER else 1


class LotMode(str, Enum):
    MIRROR = "MIRROR"
    FIXED = "FIXED"
    BALANCE = "BALANCE"
    RISK_PCT = "RISK_PCT"

    @property
    def plugin_value(self) -> int:
        return _LOT_MODE_PLUGIN_VALUES[self]


_LOT_MODE_PLUGIN_VALUES = {
    LotMode.MIRROR: 0,
    LotMode.FIXED: 1,
    LotMode.BALANCE: 2,
    LotMode.RISK_PCT: 3,
}


class PendingAccount(BaseModel):
    """One account in the launch queue, credentials already decrypted"""
    id: int
    login: str
    password: SecretStr
    server: str
    role: AccountRole = AccountRole.SLAVE
    channel_code: str = ""
    master_key: str = Field(default="", repr=False)
    lot_mode: LotMode = LotMode.MIRROR
    fixed_lot: float = 0.01
    risk_pct: float = 1.0
    master_balance: float = 10000.0
    label: str = ""
    user_name: str = ""

    @field_serializer("password", when_used="json")
    def _reveal_password(self, value: SecretStr) -> str:
        return value.get_secret_value()


class PendingQueue(BaseModel):
    accounts: List[PendingAccount] = Field(default_factory=list)
    server_url: str = ""


class StopRequest(BaseModel):
    id: int


class StopQueue(BaseModel):
    accounts: List[StopRequest] = Field(default_factory=list)


class StatusReport(BaseModel):
    account_id: int
    status: AccountStatus


class StatusReportAck(BaseModel):
    ok: bool = True
    status: AccountStatus
    deleted: bool = False


class HeartbeatAck(BaseModel):
    ok: bool = True
    server_time: int


class AgentConnectivity(BaseModel):
    web_only: bool
    agent_configured: bool
    agent_connected: bool
    agent_last_seen: Optional[int] = None
