import secrets

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from dependency_injector.wiring import inject, Provide
from typing import Optional

from app.containers import CoordinatorContainer
from core.config.settings import Settings
from services.auth.security import owner_id_from_token
from services.coordinator.service import CoordinatorService
from services.relay.service import TradeRelayService

AGENT_SECRET_HEADER = "x-agent-secret"

_bearer = HTTPBearer(auto_error=False)


@inject
def get_settings(
    settings: Settings = Depends(Provide[CoordinatorContainer.settings])
) -> Settings:
    """Get application settings for API endpoints"""
    return settings


@inject
def get_coordinator_service(
    service: CoordinatorService = Depends(Provide[CoordinatorContainer.coordinator_service])
) -> CoordinatorService:
    return service


@inject
def get_relay_service(
    service: TradeRelayService = Depends(Provide[CoordinatorContainer.relay_service])
) -> TradeRelayService:
    return service


# Agent authentication: one shared secret per deployment
def require_agent(
    x_agent_secret: Optional[str] = Header(None, alias=AGENT_SECRET_HEADER),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.coordinator.agent_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Agent not configured",
        )
    if not x_agent_secret or not secrets.compare_digest(
        x_agent_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


# Owner authentication: bearer token issued by the login service
def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> str:
    """Owner id from a valid bearer token"""
    owner_id = owner_id_from_token(credentials.credentials, settings) if credentials else None
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id
