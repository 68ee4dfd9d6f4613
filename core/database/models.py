# Database models for coordinator state
import time

from sqlalchemy import Column, BigInteger, Integer, String, Float, Boolean, Text, UniqueConstraint, Index
from .connection import Base


def epoch_now() -> int:
    """Integer epoch seconds, the timestamp unit used on the wire."""
    return int(time.time())


class TenantAccount(Base):
    """One linked trading account; its status is the desired/observed instance state"""
    __tablename__ = "tenant_accounts"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    label = Column(String, nullable=False, default="My Account")
    # Opaque blobs from the credential cipher
    login_enc = Column(Text, nullable=False)
    password_enc = Column(Text, nullable=False)
    server = Column(String, nullable=False)
    account_type = Column(String, nullable=False, default="demo")
    role = Column(String, nullable=False, default="slave")  # master | slave
    channel_code = Column(String, nullable=False, default="")
    master_key = Column(String, nullable=False, default="")
    lot_mode = Column(String, nullable=False, default="MIRROR")
    fixed_lot = Column(Float, nullable=False, default=0.01)
    risk_pct = Column(Float, nullable=False, default=1.0)
    master_balance = Column(Float, nullable=False, default=10000.0)
    user_name = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending_vps", index=True)
    # Row is deleted once the agent reports the instance stopped
    unlink_requested = Column(Boolean, nullable=False, default=False)
    last_active = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        Index('idx_tenant_accounts_owner_created', 'owner_id', 'created_at'),
    )


class Channel(Base):
    """Publishing channel owned by a master account"""
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    owner_id = Column(String, nullable=False, index=True)
    master_key = Column(String, nullable=False)
    require_approval = Column(Boolean, nullable=False, default=True)
    last_active = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False, default=epoch_now)


class OpenTrade(Base):
    """Current view of one open position on a channel; replaced on every push"""
    __tablename__ = "open_trades"

    id = Column(Integer, primary_key=True)
    channel = Column(String, nullable=False, index=True)
    ticket = Column(BigInteger, nullable=False)
    symbol = Column(String, nullable=False)
    type = Column(Integer, nullable=False)  # 0 buy, 1 sell
    lots = Column(Float, nullable=False)
    open_price = Column(Float, nullable=False)
    sl = Column(Float, nullable=False, default=0.0)
    tp = Column(Float, nullable=False, default=0.0)
    open_time = Column(Integer, nullable=False)
    profit = Column(Float, nullable=False, default=0.0)
    updated_at = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        UniqueConstraint('channel', 'ticket', name='uq_open_trades_channel_ticket'),
        Index('idx_open_trades_channel_open_time', 'channel', 'open_time'),
    )


class ClosedTradeRecord(Base):
    """Append-only closed trade history; insert-if-absent per (channel, ticket)"""
    __tablename__ = "closed_trades"

    id = Column(Integer, primary_key=True)
    channel = Column(String, nullable=False, index=True)
    ticket = Column(BigInteger, nullable=False)
    symbol = Column(String, nullable=False)
    type = Column(Integer, nullable=False)
    lots = Column(Float, nullable=False)
    open_price = Column(Float, nullable=False)
    close_price = Column(Float, nullable=False)
    sl = Column(Float, nullable=False, default=0.0)
    tp = Column(Float, nullable=False, default=0.0)
    open_time = Column(Integer, nullable=False)
    close_time = Column(Integer, nullable=False)
    profit = Column(Float, nullable=False, default=0.0)
    pips = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint('channel', 'ticket', name='uq_closed_trades_channel_ticket'),
        Index('idx_closed_trades_channel_close_time', 'channel', 'close_time'),
    )


class Subscription(Base):
    """Subscriber registration on a channel, gated by owner approval"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    channel = Column(String, nullable=False, index=True)
    subscriber_id = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending")
    lot_mode = Column(String, nullable=False, default="MIRROR")
    last_seen = Column(Integer, nullable=False, default=0)
    requested_at = Column(Integer, nullable=False, default=epoch_now)
    approved_at = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('channel', 'subscriber_id', name='uq_subscriptions_channel_subscriber'),
    )
