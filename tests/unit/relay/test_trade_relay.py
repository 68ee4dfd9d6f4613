import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy import BigInteger, func, select

from core.database.models import Channel, ClosedTradeRecord, OpenTrade, Subscription
from core.monitoring.metrics import CoordinatorMetrics
from core.schemas.relay import SubscriptionStatus
from core.utils.exceptions import (
    ChannelAuthError,
    ChannelNotFoundError,
    InvalidSubscriptionTransitionError,
    NotChannelOwnerError,
    PayloadValidationError,
    SubscriptionNotFoundError,
    SubscriptionRejectedError,
)
from services.relay.service import TradeRelayService, calculate_stats

CODE = "ABC123"
KEY = "MASTERKEY1234567"
OWNER = "owner-1"


def _trade(ticket, open_time=1000, **overrides):
    trade = {
        "ticket": ticket, "symbol": "EURUSD", "type": 0, "lots": 0.1,
        "open_price": 1.1, "sl": 1.09, "tp": 1.12, "open_time": open_time, "profit": 0.0,
    }
    trade.update(overrides)
    return trade


def _closed(ticket, profit, **overrides):
    trade = _trade(ticket, close_price=1.105, close_time=2000, profit=profit, pips=5.0)
    trade.update(overrides)
    return trade


def _push(trades=(), closed=(), code=CODE, key=KEY):
    return {"code": code, "master_key": key, "trades": list(trades), "closed": list(closed)}


async def _create_channel(db_manager, require_approval=False, code=CODE):
    async with db_manager.get_session() as session:
        async with session.begin():
            session.add(Channel(code=code, name="Test", owner_id=OWNER, master_key=KEY,
                                require_approval=require_approval, created_at=1))


async def _count(db_manager, model):
    async with db_manager.get_session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def metrics():
    return CoordinatorMetrics(CollectorRegistry())


@pytest.fixture
def relay(db_manager, test_settings, fake_clock, metrics):
    return TradeRelayService(db_manager, test_settings.coordinator, metrics=metrics, clock=fake_clock)


@pytest.mark.asyncio
async def test_open_then_close_scenario(relay, db_manager):
    await _create_channel(db_manager)

    await relay.push(_push(trades=[_trade(1)]))
    fetched = await relay.fetch(CODE, "slave-1")
    assert [t.ticket for t in fetched.trades] == [1]
    assert fetched.stale is False

    result = await relay.push(_push(closed=[_closed(1, profit=42)]))
    assert result.open_trades == 0
    assert result.closed_recorded == 1

    fetched = await relay.fetch(CODE, "slave-1")
    assert fetched.trades == []
    history = await relay.channel_history(CODE)
    assert len(history.trades) == 1
    assert history.trades[0].ticket == 1
    assert history.trades[0].profit == 42


@pytest.mark.asyncio
async def test_tickets_beyond_32_bits_round_trip(relay, db_manager):
    await _create_channel(db_manager)
    ticket = 2 ** 40

    await relay.push(_push(trades=[_trade(ticket)]))
    assert [t.ticket for t in (await relay.fetch(CODE, "s")).trades] == [ticket]

    await relay.push(_push(closed=[_closed(ticket, profit=3)]))
    history = await relay.channel_history(CODE)
    assert [t.ticket for t in history.trades] == [ticket]
    assert isinstance(OpenTrade.__table__.c.ticket.type, BigInteger)
    assert isinstance(ClosedTradeRecord.__table__.c.ticket.type, BigInteger)


@pytest.mark.asyncio
async def test_push_is_idempotent(relay, db_manager):
    await _create_channel(db_manager)
    payload = _push(trades=[_trade(1), _trade(2)], closed=[_closed(3, profit=5)])

    await relay.push(payload)
    first = (await relay.fetch(CODE, "s")).trades
    second_result = await relay.push(payload)
    second = (await relay.fetch(CODE, "s")).trades

    assert [(t.ticket, t.lots) for t in first] == [(t.ticket, t.lots) for t in second]
    assert second_result.closed_recorded == 0
    assert await _count(db_manager, ClosedTradeRecord) == 1


@pytest.mark.asyncio
async def test_reclosing_ticket_never_duplicates_or_rewrites_history(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(closed=[_closed(9, profit=10)]))
    await relay.push(_push(closed=[_closed(9, profit=99), _closed(9, profit=77)]))

    history = await relay.channel_history(CODE)
    assert [(t.ticket, t.profit) for t in history.trades] == [(9, 10)]


@pytest.mark.asyncio
async def test_snapshot_replaces_open_set_by_diff(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(1), _trade(2)]))
    await relay.push(_push(trades=[_trade(2, lots=0.3, sl=1.0, profit=12.5)]))

    trades = (await relay.fetch(CODE, "s")).trades
    assert [t.ticket for t in trades] == [2]
    assert trades[0].lots == 0.3
    assert trades[0].sl == 1.0
    assert trades[0].profit == 12.5
    # Silently vanished tickets are not recorded as closed
    assert await _count(db_manager, ClosedTradeRecord) == 0


@pytest.mark.asyncio
async def test_empty_snapshot_clears_open_set(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(1)]))
    await relay.push(_push())
    assert await _count(db_manager, OpenTrade) == 0


@pytest.mark.asyncio
async def test_fetch_orders_by_open_time(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(5, open_time=300), _trade(6, open_time=100), _trade(7, open_time=200)]))
    assert [t.ticket for t in (await relay.fetch(CODE, "s")).trades] == [6, 7, 5]


@pytest.mark.asyncio
async def test_closed_defaults_fill_missing_close_fields(relay, db_manager, fake_clock):
    await _create_channel(db_manager)
    closed = _trade(4, profit=None)
    await relay.push(_push(closed=[closed]))

    record = (await relay.channel_history(CODE)).trades[0]
    assert record.close_price == closed["open_price"]
    assert record.close_time == int(fake_clock.now)
    assert record.profit == 0


@pytest.mark.asyncio
async def test_malformed_push_changes_nothing(relay, db_manager, metrics):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(1)]))

    bad = _push(trades=[_trade(2), {"ticket": "x"}], closed=[_closed(1, profit=3)])
    with pytest.raises(PayloadValidationError):
        await relay.push(bad)

    assert [t.ticket for t in (await relay.fetch(CODE, "s")).trades] == [1]
    assert await _count(db_manager, ClosedTradeRecord) == 0
    assert metrics.registry.get_sample_value("relay_pushes_total", {"outcome": "invalid"}) == 1


@pytest.mark.asyncio
async def test_push_requires_matching_master_key(relay, db_manager):
    await _create_channel(db_manager)
    with pytest.raises(ChannelAuthError):
        await relay.push(_push(trades=[_trade(1)], key="WRONG"))
    assert await _count(db_manager, OpenTrade) == 0


@pytest.mark.asyncio
async def test_channel_code_is_case_insensitive(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(1)], code="abc123"))
    assert len((await relay.fetch("abc123", "s")).trades) == 1


@pytest.mark.asyncio
async def test_staleness_flag(relay, db_manager, fake_clock):
    await _create_channel(db_manager)
    await relay.push(_push(trades=[_trade(1)]))
    fake_clock.advance(31)

    fetched = await relay.fetch(CODE, "s")
    assert fetched.stale is True
    assert len(fetched.trades) == 1


@pytest.mark.asyncio
async def test_fetch_unknown_channel(relay):
    with pytest.raises(ChannelNotFoundError):
        await relay.fetch("NOPE99", "s")


@pytest.mark.asyncio
async def test_gated_fetch_requires_approval(relay, db_manager):
    await _create_channel(db_manager, require_approval=True)
    await relay.push(_push(trades=[_trade(2, open_time=20), _trade(1, open_time=10)]))

    with pytest.raises(SubscriptionRejectedError) as exc_info:
        await relay.fetch(CODE, "slave-1")
    assert exc_info.value.reason == "not_subscribed"

    response = await relay.subscribe({"code": CODE, "slave_id": "slave-1", "name": "Bob"})
    assert response.status is SubscriptionStatus.PENDING
    with pytest.raises(SubscriptionRejectedError) as exc_info:
        await relay.fetch(CODE, "slave-1")
    assert exc_info.value.reason == "pending"

    subscription_id = (await relay.list_subscriptions(OWNER, CODE))[0].id
    await relay.set_subscription_state(OWNER, subscription_id, "approve")

    fetched = await relay.fetch(CODE, "slave-1", lot_mode="FIXED")
    assert [t.ticket for t in fetched.trades] == [1, 2]
    views = await relay.list_subscriptions(OWNER, CODE)
    assert views[0].lot_mode == "FIXED"
    assert views[0].last_seen > 0


@pytest.mark.asyncio
async def test_ungated_fetch_auto_registers_subscriber(relay, db_manager):
    await _create_channel(db_manager)
    await relay.fetch(CODE, "slave-9", lot_mode="BALANCE")

    async with db_manager.get_session() as session:
        row = (await session.execute(select(Subscription))).scalar_one()
    assert row.subscriber_id == "slave-9"
    assert row.status == "approved"
    assert row.lot_mode == "BALANCE"


@pytest.mark.asyncio
async def test_revoked_subscription_restarts_on_fresh_subscribe(relay, db_manager):
    await _create_channel(db_manager, require_approval=True)
    await relay.subscribe({"code": CODE, "subscriber_id": "s1"})
    subscription_id = (await relay.list_subscriptions(OWNER, CODE))[0].id
    await relay.set_subscription_state(OWNER, subscription_id, "approve")
    await relay.set_subscription_state(OWNER, subscription_id, "revoke")

    with pytest.raises(SubscriptionRejectedError) as exc_info:
        await relay.fetch(CODE, "s1")
    assert exc_info.value.reason == "revoked"
    with pytest.raises(InvalidSubscriptionTransitionError):
        await relay.set_subscription_state(OWNER, subscription_id, "approve")

    response = await relay.subscribe({"code": CODE, "subscriber_id": "s1"})
    assert response.status is SubscriptionStatus.PENDING
    view = (await relay.list_subscriptions(OWNER, CODE))[0]
    assert view.approved_at == 0


@pytest.mark.asyncio
async def test_resubscribe_keeps_active_state(relay, db_manager):
    await _create_channel(db_manager, require_approval=True)
    await relay.subscribe({"code": CODE, "subscriber_id": "s1"})
    subscription_id = (await relay.list_subscriptions(OWNER, CODE))[0].id
    await relay.set_subscription_state(OWNER, subscription_id, "approve")

    response = await relay.subscribe({"code": CODE, "subscriber_id": "s1", "name": "renamed"})
    assert response.status is SubscriptionStatus.APPROVED


@pytest.mark.asyncio
async def test_owner_actions_require_channel_owner(relay, db_manager):
    await _create_channel(db_manager, require_approval=True)
    await relay.subscribe({"code": CODE, "subscriber_id": "s1"})
    subscription_id = (await relay.list_subscriptions(OWNER, CODE))[0].id

    with pytest.raises(NotChannelOwnerError):
        await relay.set_subscription_state("intruder", subscription_id, "approve")
    with pytest.raises(NotChannelOwnerError):
        await relay.list_subscriptions("intruder", CODE)
    with pytest.raises(SubscriptionNotFoundError):
        await relay.set_subscription_state(OWNER, 404, "approve")


@pytest.mark.asyncio
async def test_subscribe_unknown_channel(relay):
    with pytest.raises(ChannelNotFoundError):
        await relay.subscribe({"code": "NOPE99", "subscriber_id": "s1"})


@pytest.mark.asyncio
async def test_history_stats(relay, db_manager):
    await _create_channel(db_manager)
    await relay.push(_push(closed=[
        _closed(1, profit=10.0, pips=12.0),
        _closed(2, profit=-4.0, pips=-3.5),
        _closed(3, profit=6.5, pips=7.0),
    ]))

    stats = (await relay.channel_history(CODE)).stats
    assert stats.total == 3
    assert stats.wins == 2
    assert stats.losses == 1
    assert stats.win_rate == 67
    assert stats.total_profit == 12.5
    assert stats.total_pips == 15.5
    assert stats.best_trade == 10.0
    assert stats.worst_trade == -4.0
    assert stats.avg_profit == 4.17


def test_stats_for_empty_history():
    stats = calculate_stats([])
    assert stats.total == 0
    assert stats.win_rate == 0
