import pytest
from sqlalchemy import select

from core.database.models import Channel, TenantAccount
from core.schemas.accounts import LinkAccountRequest
from core.schemas.control_plane import AccountRole, AccountStatus
from core.utils.exceptions import AccountNotFoundError, InvalidStatusTransitionError
from core.utils.ids import CODE_ALPHABET
from services.auth.credentials import CredentialCipher
from services.coordinator.service import CoordinatorService

OWNER = "owner-1"


@pytest.fixture
def cipher(test_settings):
    return CredentialCipher(test_settings.credentials)


@pytest.fixture
def coordinator(db_manager, cipher, test_settings, fake_clock):
    return CoordinatorService(db_manager, cipher, test_settings.coordinator, clock=fake_clock)


def _link(role=AccountRole.SLAVE, **overrides):
    fields = dict(label="Main", login="5012345", password="pw", server="Broker-Demo", role=role)
    fields.update(overrides)
    return LinkAccountRequest(**fields)


async def _status(db_manager, account_id):
    async with db_manager.get_session() as session:
        account = await session.get(TenantAccount, account_id)
        return account.status if account else None


@pytest.mark.asyncio
async def test_link_encrypts_credentials(coordinator, db_manager, cipher):
    response = await coordinator.link_account(OWNER, _link())
    assert response.status is AccountStatus.PENDING_VPS
    assert response.web_only is False

    async with db_manager.get_session() as session:
        row = await session.get(TenantAccount, response.account_id)
    assert row.login_enc != "5012345"
    assert cipher.decrypt(row.login_enc) == "5012345"
    assert cipher.decrypt(row.password_enc) == "pw"


@pytest.mark.asyncio
async def test_master_link_creates_channel(coordinator, db_manager):
    response = await coordinator.link_account(OWNER, _link(role=AccountRole.MASTER))
    channel = response.channel
    assert channel is not None
    assert len(channel.code) == 6
    assert len(channel.master_key) == 16
    assert set(channel.code) <= set(CODE_ALPHABET)

    async with db_manager.get_session() as session:
        result = await session.execute(select(Channel).where(Channel.code == channel.code))
        row = result.scalar_one()
    assert row.owner_id == OWNER
    assert row.master_key == channel.master_key


@pytest.mark.asyncio
async def test_pending_queue_returns_decrypted_credentials_oldest_first(coordinator, fake_clock):
    first = await coordinator.link_account(OWNER, _link(login="111"))
    fake_clock.advance(5)
    second = await coordinator.link_account(OWNER, _link(login="222"))

    queue = await coordinator.pending_accounts()

    assert [a.id for a in queue.accounts] == [first.account_id, second.account_id]
    assert queue.accounts[0].login == "111"
    assert queue.accounts[0].password.get_secret_value() == "pw"
    assert queue.server_url == "https://relay.example.test"


@pytest.mark.asyncio
async def test_undecryptable_account_marked_error(coordinator, db_manager):
    response = await coordinator.link_account(OWNER, _link())
    async with db_manager.get_session() as session:
        async with session.begin():
            row = await session.get(TenantAccount, response.account_id)
            row.password_enc = "00:11:22"

    queue = await coordinator.pending_accounts()

    assert queue.accounts == []
    assert await _status(db_manager, response.account_id) == AccountStatus.ERROR.value


@pytest.mark.asyncio
async def test_status_reports_drive_account_status(coordinator, db_manager):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id

    await coordinator.report_status(account_id, AccountStatus.STARTING)
    assert [a.id for a in (await coordinator.pending_accounts()).accounts] == [account_id]

    await coordinator.report_status(account_id, AccountStatus.RUNNING)
    assert (await coordinator.pending_accounts()).accounts == []
    assert await _status(db_manager, account_id) == "running"


@pytest.mark.asyncio
async def test_pending_stop_survives_late_running_report(coordinator, db_manager):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id
    await coordinator.stop_account(OWNER, account_id)

    ack = await coordinator.report_status(account_id, AccountStatus.RUNNING)

    assert ack.status is AccountStatus.STOP_REQUESTED
    assert [s.id for s in (await coordinator.stop_queue()).accounts] == [account_id]


@pytest.mark.asyncio
async def test_report_for_unknown_account_raises(coordinator):
    with pytest.raises(AccountNotFoundError):
        await coordinator.report_status(999, AccountStatus.RUNNING)


@pytest.mark.asyncio
async def test_start_only_from_stopped_or_error(coordinator):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id
    await coordinator.report_status(account_id, AccountStatus.RUNNING)

    with pytest.raises(InvalidStatusTransitionError):
        await coordinator.start_account(OWNER, account_id)

    await coordinator.report_status(account_id, AccountStatus.ERROR)
    response = await coordinator.start_account(OWNER, account_id)
    assert response.status is AccountStatus.PENDING_VPS


@pytest.mark.asyncio
async def test_owner_scoping(coordinator):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id
    with pytest.raises(AccountNotFoundError):
        await coordinator.stop_account("someone-else", account_id)
    assert await coordinator.list_accounts("someone-else") == []
    assert [a.id for a in await coordinator.list_accounts(OWNER)] == [account_id]


@pytest.mark.asyncio
async def test_unlink_running_account_waits_for_stop(coordinator, db_manager):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id
    await coordinator.report_status(account_id, AccountStatus.RUNNING)

    response = await coordinator.unlink_account(OWNER, account_id)

    assert response.deleted is False
    assert response.status is AccountStatus.STOP_REQUESTED
    assert [s.id for s in (await coordinator.stop_queue()).accounts] == [account_id]
    assert (await coordinator.pending_accounts()).accounts == []

    ack = await coordinator.report_status(account_id, AccountStatus.STOPPED)
    assert ack.deleted is True
    assert await _status(db_manager, account_id) is None


@pytest.mark.asyncio
async def test_unlink_stopped_account_deletes_immediately(coordinator, db_manager):
    account_id = (await coordinator.link_account(OWNER, _link())).account_id
    await coordinator.report_status(account_id, AccountStatus.STOPPED)

    response = await coordinator.unlink_account(OWNER, account_id)

    assert response.deleted is True
    assert await _status(db_manager, account_id) is None


@pytest.mark.asyncio
async def test_agent_connected_tracks_heartbeat_age(coordinator, fake_clock):
    assert coordinator.agent_connected() is False
    coordinator.record_heartbeat()
    assert coordinator.agent_connected() is True
    fake_clock.advance(61)
    connectivity = coordinator.connectivity()
    assert connectivity.agent_connected is False
    assert connectivity.agent_configured is True
    assert connectivity.agent_last_seen == int(fake_clock.now) - 61
