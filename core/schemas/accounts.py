# Owner-facing account linking schemas

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from .control_plane import AccountRole, AccountStatus, LotMode


class LinkAccountRequest(BaseModel):
    label: str = "My Account"
    login: str = Field(min_length=1)
    password: SecretStr
    server: str = Field(min_length=1)
    account_type: str = "demo"
    role: AccountRole = AccountRole.SLAVE
    channel_code: str = ""
    lot_mode: LotMode = LotMode.MIRROR
    fixed_lot: float = Field(default=0.01, gt=0)
    risk_pct: float = Field(default=1.0, gt=0)
    master_balance: float = Field(default=10000.0, gt=0)
    user_name: str = ""

    @field_validator("password")
    @classmethod
    def _non_empty_password(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("password is required")
        return v

    @field_validator("channel_code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()


class ChannelCredentials(BaseModel):
    code: str
    master_key: str


class LinkAccountResponse(BaseModel):
    ok: bool = True
    account_id: int
    status: AccountStatus
    web_only: bool
    channel: Optional[ChannelCredentials] = None


class AccountView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    label: str
    server: str
    account_type: str
    role: AccountRole
    channel_code: str
    lot_mode: LotMode
    fixed_lot: float
    risk_pct: float
    master_balance: float
    status: AccountStatus
    unlink_requested: bool
    last_active: int
    created_at: int


class AccountActionResponse(BaseModel):
    ok: bool = True
    account_id: int
    status: AccountStatus
    deleted: bool = False
