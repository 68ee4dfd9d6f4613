"""
Coordinator: the durable store of desired tenant state.

Serves the agent's pending-launch and stop queues, applies the agent's
status reports, tracks the agent heartbeat, and handles the owner's
link/unlink/start/stop actions on accounts.
"""

import time
from typing import Callable, List, Optional

from sqlalchemy import select

from core.config.settings import CoordinatorSettings
from core.database.connection import DatabaseManager
from core.database.models import Channel, TenantAccount
from core.logging import get_api_logger_safe, get_audit_logger_safe, get_error_logger_safe
from core.monitoring.metrics import CoordinatorMetrics
from core.schemas.accounts import (
    AccountActionResponse,
    AccountView,
    ChannelCredentials,
    LinkAccountRequest,
    LinkAccountResponse,
)
from core.schemas.control_plane import (
    LAUNCH_QUEUE_STATUSES,
    AccountRole,
    AccountStatus,
    AgentConnectivity,
    PendingAccount,
    PendingQueue,
    StatusReportAck,
    StopQueue,
    StopRequest,
)
from core.utils.exceptions import AccountNotFoundError, InvalidStatusTransitionError
from core.utils.ids import generate_channel_code, generate_master_key
from services.auth.credentials import CredentialCipher, CredentialDecryptError

# Reports that would overwrite a pending stop and cause the stop to be lost
_SUPERSEDED_BY_STOP = {AccountStatus.STARTING, AccountStatus.RUNNING}

# Owner-initiated transitions
_STARTABLE = {AccountStatus.STOPPED, AccountStatus.ERROR, AccountStatus.PENDING_VPS}
_STOPPABLE = {AccountStatus.PENDING_VPS, AccountStatus.STARTING, AccountStatus.RUNNING,
              AccountStatus.STOP_REQUESTED}
_NO_INSTANCE = {AccountStatus.STOPPED, AccountStatus.ERROR}

CODE_ATTEMPTS = 10


class CoordinatorService:
    def __init__(self, db_manager: DatabaseManager, cipher: CredentialCipher,
                 settings: CoordinatorSettings, metrics: Optional[CoordinatorMetrics] = None,
                 clock: Callable[[], float] = time.time):
        self.db_manager = db_manager
        self.cipher = cipher
        self.settings = settings
        self.metrics = metrics
        self._clock = clock
        self._last_heartbeat: int = 0
        self.logger = get_api_logger_safe("coordinator.service")
        self.audit_logger = get_audit_logger_safe("coordinator.service")
        self.error_logger = get_error_logger_safe("coordinator.service")

    def _now(self) -> int:
        return int(self._clock())

    @property
    def agent_configured(self) -> bool:
        return bool(self.settings.agent_secret)

    # --- Heartbeat ---

    def record_heartbeat(self) -> int:
        self._last_heartbeat = self._now()
        if self.metrics:
            self.metrics.set_heartbeat(self._last_heartbeat)
        return self._last_heartbeat

    def agent_connected(self) -> bool:
        if not self.agent_configured or not self._last_heartbeat:
            return False
        return (self._now() - self._last_heartbeat) < self.settings.heartbeat_timeout_seconds

    def connectivity(self) -> AgentConnectivity:
        return AgentConnectivity(
            web_only=not self.agent_configured,
            agent_configured=self.agent_configured,
            agent_connected=self.agent_connected(),
            agent_last_seen=self._last_heartbeat or None,
        )

    # --- Agent queues ---

    async def pending_accounts(self) -> PendingQueue:
        """Accounts awaiting launch, oldest first, with decrypted credentials.

        An account whose credentials cannot be decrypted is moved to
        ``error`` instead of being handed out.
        """
        accounts: List[PendingAccount] = []
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TenantAccount)
                .where(TenantAccount.status.in_([s.value for s in LAUNCH_QUEUE_STATUSES]))
                .where(TenantAccount.unlink_requested.is_(False))
                .order_by(TenantAccount.created_at.asc(), TenantAccount.id.asc())
            )
            rows = result.scalars().all()
            broken = False
            for row in rows:
                try:
                    login = self.cipher.decrypt(row.login_enc)
                    password = self.cipher.decrypt(row.password_enc)
                except CredentialDecryptError as e:
                    self.error_logger.error("Stored credentials unreadable, marking account error",
                                            account_id=row.id, error=e.message)
                    row.status = AccountStatus.ERROR.value
                    row.last_active = self._now()
                    broken = True
                    continue
                accounts.append(PendingAccount(
                    id=row.id,
                    login=login,
                    password=password,
                    server=row.server,
                    role=row.role,
                    channel_code=row.channel_code,
                    master_key=row.master_key,
                    lot_mode=row.lot_mode,
                    fixed_lot=row.fixed_lot,
                    risk_pct=row.risk_pct,
                    master_balance=row.master_balance,
                    label=row.label,
                    user_name=row.user_name,
                ))
            if broken:
                await session.commit()
        return PendingQueue(accounts=accounts, server_url=self.settings.publish_base_url)

    async def stop_queue(self) -> StopQueue:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TenantAccount.id)
                .where(TenantAccount.status == AccountStatus.STOP_REQUESTED.value)
                .order_by(TenantAccount.created_at.asc(), TenantAccount.id.asc())
            )
            return StopQueue(accounts=[StopRequest(id=account_id) for account_id in result.scalars()])

    async def report_status(self, account_id: int, status: AccountStatus) -> StatusReportAck:
        """Apply an observed status reported by the agent.

        A pending stop is kept when the agent reports ``starting`` or
        ``running``. An account flagged for unlinking is deleted once it
        reports ``stopped``.
        """
        status = AccountStatus(status)
        if self.metrics:
            self.metrics.record_status_report(status.value)

        async with self.db_manager.get_session() as session:
            async with session.begin():
                account = await session.get(TenantAccount, account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)

                if account.unlink_requested and status in (AccountStatus.STOPPED, AccountStatus.ERROR):
                    await session.delete(account)
                    self.audit_logger.info("Account unlinked after instance stop", account_id=account_id)
                    return StatusReportAck(status=status, deleted=True)

                current = AccountStatus(account.status)
                account.last_active = self._now()
                if current is AccountStatus.STOP_REQUESTED and status in _SUPERSEDED_BY_STOP:
                    self.logger.info("Keeping pending stop over agent report",
                                     account_id=account_id, reported=status.value)
                    return StatusReportAck(status=current)

                account.status = status.value

        self.logger.info("Account status updated", account_id=account_id,
                         previous=current.value, status=status.value)
        return StatusReportAck(status=status)

    # --- Owner actions ---

    async def _owned_account(self, session, owner_id: str, account_id: int) -> TenantAccount:
        account = await session.get(TenantAccount, account_id)
        if account is None or account.owner_id != owner_id:
            raise AccountNotFoundError(account_id)
        return account

    async def _unique_channel_code(self, session) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = generate_channel_code()
            existing = await session.execute(select(Channel.id).where(Channel.code == code))
            if existing.scalar_one_or_none() is None:
                return code
        raise RuntimeError("Could not generate a unique channel code")

    async def link_account(self, owner_id: str, request: LinkAccountRequest) -> LinkAccountResponse:
        status = AccountStatus.PENDING_VPS
        channel_info = None
        async with self.db_manager.get_session() as session:
            async with session.begin():
                account = TenantAccount(
                    owner_id=owner_id,
                    label=request.label,
                    login_enc=self.cipher.encrypt(request.login),
                    password_enc=self.cipher.encrypt(request.password.get_secret_value()),
                    server=request.server,
                    account_type=request.account_type,
                    role=request.role.value,
                    channel_code=request.channel_code,
                    lot_mode=request.lot_mode.value,
                    fixed_lot=request.fixed_lot,
                    risk_pct=request.risk_pct,
                    master_balance=request.master_balance,
                    user_name=request.user_name,
                    status=status.value,
                    created_at=self._now(),
                )
                if request.role is AccountRole.MASTER:
                    code = await self._unique_channel_code(session)
                    master_key = generate_master_key()
                    session.add(Channel(
                        code=code,
                        name=f"{request.label}'s Channel",
                        owner_id=owner_id,
                        master_key=master_key,
                        created_at=self._now(),
                    ))
                    account.channel_code = code
                    account.master_key = master_key
                    channel_info = ChannelCredentials(code=code, master_key=master_key)
                session.add(account)
                await session.flush()
                account_id = account.id

        self.audit_logger.info("Account linked", account_id=account_id, owner_id=owner_id,
                               role=request.role.value,
                               channel_code=channel_info.code if channel_info else request.channel_code)
        return LinkAccountResponse(
            account_id=account_id,
            status=status,
            web_only=not self.agent_configured,
            channel=channel_info,
        )

    async def list_accounts(self, owner_id: str) -> List[AccountView]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TenantAccount)
                .where(TenantAccount.owner_id == owner_id)
                .order_by(TenantAccount.created_at.desc(), TenantAccount.id.desc())
            )
            return [AccountView.model_validate(row) for row in result.scalars()]

    async def start_account(self, owner_id: str, account_id: int) -> AccountActionResponse:
        """User-initiated start or restart; the only way out of error/stopped."""
        async with self.db_manager.get_session() as session:
            async with session.begin():
                account = await self._owned_account(session, owner_id, account_id)
                current = AccountStatus(account.status)
                if current not in _STARTABLE or account.unlink_requested:
                    raise InvalidStatusTransitionError(account_id, current.value,
                                                       AccountStatus.PENDING_VPS.value)
                account.status = AccountStatus.PENDING_VPS.value

        self.audit_logger.info("Account start requested", account_id=account_id, owner_id=owner_id,
                               previous=current.value)
        return AccountActionResponse(account_id=account_id, status=AccountStatus.PENDING_VPS)

    async def stop_account(self, owner_id: str, account_id: int) -> AccountActionResponse:
        async with self.db_manager.get_session() as session:
            async with session.begin():
                account = await self._owned_account(session, owner_id, account_id)
                current = AccountStatus(account.status)
                if current not in _STOPPABLE:
                    raise InvalidStatusTransitionError(account_id, current.value,
                                                       AccountStatus.STOP_REQUESTED.value)
                account.status = AccountStatus.STOP_REQUESTED.value

        self.audit_logger.info("Account stop requested", account_id=account_id, owner_id=owner_id,
                               previous=current.value)
        return AccountActionResponse(account_id=account_id, status=AccountStatus.STOP_REQUESTED)

    async def unlink_account(self, owner_id: str, account_id: int) -> AccountActionResponse:
        """Delete an account, stopping its instance first if one may exist.

        Accounts that cannot have a running instance are deleted at once.
        Otherwise the account is flagged and queued for stop, and the row is
        deleted when the agent reports it stopped.
        """
        async with self.db_manager.get_session() as session:
            async with session.begin():
                account = await self._owned_account(session, owner_id, account_id)
                current = AccountStatus(account.status)
                if current in _NO_INSTANCE or not self.agent_configured:
                    await session.delete(account)
                    deleted = True
                else:
                    account.unlink_requested = True
                    account.status = AccountStatus.STOP_REQUESTED.value
                    deleted = False

        self.audit_logger.info("Account unlink requested", account_id=account_id, owner_id=owner_id,
                               previous=current.value, deleted=deleted)
        return AccountActionResponse(
            account_id=account_id,
            status=current if deleted else AccountStatus.STOP_REQUESTED,
            deleted=deleted,
        )
