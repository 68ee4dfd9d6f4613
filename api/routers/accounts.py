"""
Owner account linking and start/stop/unlink actions.
"""

from fastapi import APIRouter, Depends, status
from typing import List

from api.dependencies import get_coordinator_service, get_current_owner
from core.schemas.accounts import AccountActionResponse, AccountView, LinkAccountRequest, LinkAccountResponse
from services.coordinator.service import CoordinatorService

router = APIRouter(prefix="/accounts", tags=["Accounts"])


@router.post("", response_model=LinkAccountResponse, status_code=status.HTTP_201_CREATED)
async def link_account(
    request: LinkAccountRequest,
    owner_id: str = Depends(get_current_owner),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> LinkAccountResponse:
    return await service.link_account(owner_id, request)


@router.get("", response_model=List[AccountView])
async def list_accounts(
    owner_id: str = Depends(get_current_owner),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> List[AccountView]:
    return await service.list_accounts(owner_id)


@router.post("/{account_id}/start", response_model=AccountActionResponse)
async def start_account(
    account_id: int,
    owner_id: str = Depends(get_current_owner),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> AccountActionResponse:
    return await service.start_account(owner_id, account_id)


@router.post("/{account_id}/stop", response_model=AccountActionResponse)
async def stop_account(
    account_id: int,
    owner_id: str = Depends(get_current_owner),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> AccountActionResponse:
    return await service.stop_account(owner_id, account_id)


@router.delete("/{account_id}", response_model=AccountActionResponse)
async def unlink_account(
    account_id: int,
    owner_id: str = Depends(get_current_owner),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> AccountActionResponse:
    return await service.unlink_account(owner_id, account_id)
