"""
Trade relay: snapshot-diff reconciliation between a channel's publisher
and its subscribers.

A push carries the publisher's complete open book plus positions closed
since the previous push. Within one transaction it:

1. records each closed position in history if not already there, then
   drops it from the open set;
2. drops every open position whose ticket is absent from the snapshot;
3. upserts every position in the snapshot;
4. stamps the channel's last activity.

The payload is validated in full before anything is written, so a
malformed push changes nothing.
"""

import time
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, select

from core.config.settings import CoordinatorSettings
from core.database.connection import DatabaseManager
from core.database.models import Channel, ClosedTradeRecord, OpenTrade, Subscription
from core.logging import get_relay_logger_safe, get_audit_logger_safe
from core.monitoring.metrics import CoordinatorMetrics
from core.schemas.relay import (
    ChannelHistory,
    ChannelView,
    ClosedTrade,
    ClosedTradeView,
    FetchResponse,
    HistoryStats,
    OpenTradeView,
    PushRequest,
    PushResult,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionStatus,
    SubscriptionView,
    TradeSnapshot,
)
from core.utils.exceptions import (
    ChannelAuthError,
    ChannelNotFoundError,
    InvalidSubscriptionTransitionError,
    NotChannelOwnerError,
    PayloadValidationError,
    SubscriptionNotFoundError,
    SubscriptionRejectedError,
)

NOT_SUBSCRIBED = "not_subscribed"

_ACTION_STATUS = {
    "approve": SubscriptionStatus.APPROVED,
    "reject": SubscriptionStatus.REJECTED,
    "revoke": SubscriptionStatus.REVOKED,
}

# Owner actions allowed from each state; revoked only leaves via a fresh subscribe
_ALLOWED_ACTIONS = {
    SubscriptionStatus.PENDING: {"approve", "reject", "revoke"},
    SubscriptionStatus.APPROVED: {"approve", "revoke"},
    SubscriptionStatus.REJECTED: {"approve", "reject"},
    SubscriptionStatus.REVOKED: {"revoke"},
}

DEFAULT_HISTORY_LIMIT = 500


def calculate_stats(trades: List[ClosedTradeView]) -> HistoryStats:
    if not trades:
        return HistoryStats()
    profits = [t.profit for t in trades]
    wins = sum(1 for p in profits if p > 0)
    total_profit = sum(profits)
    return HistoryStats(
        total=len(trades),
        wins=wins,
        losses=len(trades) - wins,
        win_rate=round(wins / len(trades) * 100),
        total_profit=round(total_profit, 2),
        total_pips=round(sum(t.pips for t in trades), 1),
        best_trade=round(max(profits), 2),
        worst_trade=round(min(profits), 2),
        avg_profit=round(total_profit / len(trades), 2),
    )


class TradeRelayService:
    def __init__(self, db_manager: DatabaseManager, settings: CoordinatorSettings,
                 metrics: Optional[CoordinatorMetrics] = None,
                 clock: Callable[[], float] = time.time):
        self.db_manager = db_manager
        self.settings = settings
        self.metrics = metrics
        self._clock = clock
        self.logger = get_relay_logger_safe("relay.service")
        self.audit_logger = get_audit_logger_safe("relay.service")

    def _now(self) -> int:
        return int(self._clock())

    def _record_fetch(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_fetch(outcome)

    @staticmethod
    def _normalize_code(code: str) -> str:
        return (code or "").strip().upper()

    async def _channel(self, session, code: str) -> Channel:
        result = await session.execute(select(Channel).where(Channel.code == code))
        channel = result.scalar_one_or_none()
        if channel is None:
            raise ChannelNotFoundError(code)
        return channel

    # --- Publish ---

    async def push(self, payload) -> PushResult:
        try:
            request = payload if isinstance(payload, PushRequest) else PushRequest.model_validate(payload)
        except ValidationError as e:
            if self.metrics:
                self.metrics.record_push("invalid")
            raise PayloadValidationError(
                "Malformed push payload",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

        # Last report wins for a ticket repeated within one payload
        closed: Dict[int, ClosedTrade] = {t.ticket: t for t in request.closed}
        snapshot: Dict[int, TradeSnapshot] = {t.ticket: t for t in request.trades}
        code = request.code
        ts = self._now()

        async with self.db_manager.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Channel).where(Channel.code == code, Channel.master_key == request.master_key)
                )
                channel = result.scalar_one_or_none()
                if channel is None:
                    if self.metrics:
                        self.metrics.record_push("unauthorized")
                    raise ChannelAuthError("Invalid channel code or master key")

                recorded = await self._record_closed(session, code, closed, ts)
                if closed:
                    await session.execute(
                        delete(OpenTrade)
                        .where(OpenTrade.channel == code, OpenTrade.ticket.in_(list(closed)))
                        .execution_options(synchronize_session=False)
                    )

                stale_rows = delete(OpenTrade).where(OpenTrade.channel == code)
                if snapshot:
                    stale_rows = stale_rows.where(OpenTrade.ticket.notin_(list(snapshot)))
                await session.execute(stale_rows.execution_options(synchronize_session=False))

                await self._upsert_open(session, code, snapshot, ts)
                channel.last_active = ts

        if self.metrics:
            self.metrics.record_push("ok", open_trades=len(snapshot), closed_recorded=recorded)
        self.logger.debug("Push applied", channel=code, open_trades=len(snapshot),
                          closed_reported=len(closed), closed_recorded=recorded)
        return PushResult(ts=ts, open_trades=len(snapshot), closed_recorded=recorded)

    async def _record_closed(self, session, code: str, closed: Dict[int, ClosedTrade], ts: int) -> int:
        """Insert-if-absent into history; existing rows are never modified."""
        if not closed:
            return 0
        result = await session.execute(
            select(ClosedTradeRecord.ticket)
            .where(ClosedTradeRecord.channel == code, ClosedTradeRecord.ticket.in_(list(closed)))
        )
        known = set(result.scalars())
        recorded = 0
        for ticket, trade in closed.items():
            if ticket in known:
                continue
            session.add(ClosedTradeRecord(
                channel=code,
                ticket=ticket,
                symbol=trade.symbol,
                type=trade.type,
                lots=trade.lots,
                open_price=trade.open_price,
                close_price=trade.close_price if trade.close_price is not None else trade.open_price,
                sl=trade.sl,
                tp=trade.tp,
                open_time=trade.open_time,
                close_time=trade.close_time if trade.close_time is not None else ts,
                profit=trade.profit,
                pips=trade.pips,
            ))
            recorded += 1
        await session.flush()
        return recorded

    async def _upsert_open(self, session, code: str, snapshot: Dict[int, TradeSnapshot], ts: int) -> None:
        if not snapshot:
            return
        result = await session.execute(
            select(OpenTrade).where(OpenTrade.channel == code, OpenTrade.ticket.in_(list(snapshot)))
        )
        existing = {row.ticket: row for row in result.scalars()}
        for ticket, trade in snapshot.items():
            row = existing.get(ticket)
            if row is None:
                session.add(OpenTrade(
                    channel=code,
                    ticket=ticket,
                    symbol=trade.symbol,
                    type=trade.type,
                    lots=trade.lots,
                    open_price=trade.open_price,
                    sl=trade.sl,
                    tp=trade.tp,
                    open_time=trade.open_time,
                    profit=trade.profit,
                    updated_at=ts,
                ))
            else:
                row.lots = trade.lots
                row.sl = trade.sl
                row.tp = trade.tp
                row.profit = trade.profit
                row.updated_at = ts

    # --- Fetch ---

    async def fetch(self, code: str, subscriber_id: str, lot_mode: str = "MIRROR") -> FetchResponse:
        """Serve the open set to a subscriber, gated by its subscription."""
        code = self._normalize_code(code)
        ts = self._now()

        async with self.db_manager.get_session() as session:
            async with session.begin():
                try:
                    channel = await self._channel(session, code)
                except ChannelNotFoundError:
                    self._record_fetch("not_found")
                    raise

                result = await session.execute(
                    select(Subscription)
                    .where(Subscription.channel == code, Subscription.subscriber_id == subscriber_id)
                )
                subscription = result.scalar_one_or_none()

                if channel.require_approval:
                    if subscription is None:
                        self._record_fetch("rejected")
                        raise SubscriptionRejectedError(code, subscriber_id, NOT_SUBSCRIBED)
                    if subscription.status != SubscriptionStatus.APPROVED.value:
                        self._record_fetch("rejected")
                        raise SubscriptionRejectedError(code, subscriber_id, subscription.status)

                if subscription is None:
                    session.add(Subscription(
                        channel=code,
                        subscriber_id=subscriber_id,
                        status=SubscriptionStatus.APPROVED.value,
                        lot_mode=lot_mode,
                        last_seen=ts,
                        requested_at=ts,
                        approved_at=ts,
                    ))
                    self.logger.info("Subscriber auto-registered on first fetch",
                                     channel=code, subscriber_id=subscriber_id)
                else:
                    subscription.last_seen = ts
                    subscription.lot_mode = lot_mode

                trades = await session.execute(
                    select(OpenTrade)
                    .where(OpenTrade.channel == code)
                    .order_by(OpenTrade.open_time.asc(), OpenTrade.ticket.asc())
                )
                views = [OpenTradeView.model_validate(row) for row in trades.scalars()]
                stale = (ts - channel.last_active) > self.settings.channel_freshness_seconds

        self._record_fetch("ok")
        return FetchResponse(channel=code, stale=stale, timestamp=ts, trades=views)

    # --- Subscriptions ---

    async def subscribe(self, payload) -> SubscribeResponse:
        """Register or refresh a subscription request.

        A rejected or revoked subscription restarts the approval cycle.
        """
        try:
            request = payload if isinstance(payload, SubscribeRequest) else SubscribeRequest.model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(
                "Malformed subscribe request",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

        ts = self._now()
        async with self.db_manager.get_session() as session:
            async with session.begin():
                channel = await self._channel(session, request.code)
                fresh_status = (SubscriptionStatus.PENDING if channel.require_approval
                                else SubscriptionStatus.APPROVED)
                result = await session.execute(
                    select(Subscription).where(
                        Subscription.channel == request.code,
                        Subscription.subscriber_id == request.subscriber_id,
                    )
                )
                subscription = result.scalar_one_or_none()
                if subscription is None:
                    subscription = Subscription(
                        channel=request.code,
                        subscriber_id=request.subscriber_id,
                        status=fresh_status.value,
                        requested_at=ts,
                        approved_at=ts if fresh_status is SubscriptionStatus.APPROVED else 0,
                    )
                    session.add(subscription)
                elif subscription.status in (SubscriptionStatus.REJECTED.value, SubscriptionStatus.REVOKED.value):
                    subscription.status = fresh_status.value
                    subscription.requested_at = ts
                    subscription.approved_at = ts if fresh_status is SubscriptionStatus.APPROVED else 0

                subscription.name = request.name
                subscription.lot_mode = request.lot_mode
                subscription.last_seen = ts
                status = SubscriptionStatus(subscription.status)

        self.audit_logger.info("Subscription requested", channel=request.code,
                               subscriber_id=request.subscriber_id, status=status.value)
        return SubscribeResponse(status=status)

    async def set_subscription_state(self, owner_id: str, subscription_id: int,
                                     action: str) -> SubscriptionStatus:
        """Owner approve/reject/revoke."""
        if action not in _ACTION_STATUS:
            raise PayloadValidationError(f"Invalid action: {action}")
        target = _ACTION_STATUS[action]

        async with self.db_manager.get_session() as session:
            async with session.begin():
                subscription = await session.get(Subscription, subscription_id)
                if subscription is None:
                    raise SubscriptionNotFoundError(subscription_id)
                channel = await self._channel(session, subscription.channel)
                if channel.owner_id != owner_id:
                    raise NotChannelOwnerError("Not authorised")

                current = SubscriptionStatus(subscription.status)
                if action not in _ALLOWED_ACTIONS[current]:
                    raise InvalidSubscriptionTransitionError(subscription_id, current.value, target.value)

                subscription.status = target.value
                if target is SubscriptionStatus.APPROVED:
                    if current is not SubscriptionStatus.APPROVED:
                        subscription.approved_at = self._now()
                else:
                    subscription.approved_at = 0

        self.audit_logger.info("Subscription updated", subscription_id=subscription_id,
                               owner_id=owner_id, action=action,
                               previous=current.value, status=target.value)
        return target

    async def list_subscriptions(self, owner_id: str, code: str) -> List[SubscriptionView]:
        code = self._normalize_code(code)
        async with self.db_manager.get_session() as session:
            channel = await self._channel(session, code)
            if channel.owner_id != owner_id:
                raise NotChannelOwnerError("Not authorised")
            result = await session.execute(
                select(Subscription)
                .where(Subscription.channel == code)
                .order_by(Subscription.requested_at.asc(), Subscription.id.asc())
            )
            return [SubscriptionView.model_validate(row) for row in result.scalars()]

    # --- Read-only views ---

    async def get_channel(self, code: str) -> ChannelView:
        async with self.db_manager.get_session() as session:
            channel = await self._channel(session, self._normalize_code(code))
            return ChannelView.model_validate(channel)

    async def channel_history(self, code: str, limit: int = DEFAULT_HISTORY_LIMIT) -> ChannelHistory:
        code = self._normalize_code(code)
        async with self.db_manager.get_session() as session:
            await self._channel(session, code)
            result = await session.execute(
                select(ClosedTradeRecord)
                .where(ClosedTradeRecord.channel == code)
                .order_by(ClosedTradeRecord.close_time.desc(), ClosedTradeRecord.ticket.desc())
                .limit(limit)
            )
            trades = [ClosedTradeView.model_validate(row) for row in result.scalars()]
        return ChannelHistory(channel=code, trades=trades, stats=calculate_stats(trades))
