# Wire schemas for the publish/fetch relay used by the trading plugin

from enum import Enum
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVOKED = "revoked"


class TradeSnapshot(BaseModel):
    """One open position as reported by the publisher"""
    model_config = ConfigDict(from_attributes=True)

    ticket: int
    symbol: str = Field(min_length=1)
    type: int
    lots: float
    open_price: float
    sl: float = 0.0
    tp: float = 0.0
    open_time: int
    profit: float = 0.0

    @field_validator("sl", "tp", "profit", mode="before")
    @classmethod
    def _none_as_zero(cls, v):
        return 0.0 if v is None else v


class ClosedTrade(BaseModel):
    """A position the publisher reports as closed since its last push"""
    model_config = ConfigDict(from_attributes=True)

    ticket: int
    symbol: str = Field(min_length=1)
    type: int
    lots: float
    open_price: float
    close_price: Optional[float] = None
    sl: float = 0.0
    tp: float = 0.0
    open_time: int
    close_time: Optional[int] = None
    profit: float = 0.0
    pips: float = 0.0

    @field_validator("sl", "tp", "profit", "pips", mode="before")
    @classmethod
    def _none_as_zero(cls, v):
        return 0.0 if v is None else v


class PushRequest(BaseModel):
    code: str = Field(min_length=1)
    master_key: str = Field(min_length=1, repr=False)
    trades: List[TradeSnapshot] = Field(default_factory=list)
    closed: List[ClosedTrade] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()


class PushResult(BaseModel):
    ok: bool = True
    ts: int
    open_trades: int
    closed_recorded: int


class OpenTradeView(TradeSnapshot):
    updated_at: int


class FetchResponse(BaseModel):
    ok: bool = True
    channel: str
    stale: bool
    timestamp: int
    trades: List[OpenTradeView]


class SubscribeRequest(BaseModel):
    code: str = Field(min_length=1)
    subscriber_id: str = Field(min_length=1, validation_alias=AliasChoices("subscriber_id", "slave_id"))
    name: str = ""
    lot_mode: str = "MIRROR"

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()


class SubscribeResponse(BaseModel):
    ok: bool = True
    status: SubscriptionStatus


class SubscriptionAction(BaseModel):
    action: Literal["approve", "reject", "revoke"]


class SubscriptionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    channel: str
    subscriber_id: str
    name: str
    status: SubscriptionStatus
    lot_mode: str
    last_seen: int
    requested_at: int
    approved_at: int


class ChannelView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str
    description: str
    require_approval: bool
    created_at: int
    last_active: int


class ClosedTradeView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket: int
    symbol: str
    type: int
    lots: float
    open_price: float
    close_price: float
    sl: float
    tp: float
    open_time: int
    close_time: int
    profit: float
    pips: float


class HistoryStats(BaseModel):
    total: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: int = 0
    total_profit: float = 0.0
    total_pips: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    avg_profit: float = 0.0


class ChannelHistory(BaseModel):
    channel: str
    trades: List[ClosedTradeView]
    stats: HistoryStats
