"""
Owner-facing channel and subscription endpoints.
"""

from fastapi import APIRouter, Body, Depends, Query
from typing import List

from api.dependencies import get_current_owner, get_relay_service
from core.schemas.relay import (
    ChannelHistory,
    ChannelView,
    SubscribeResponse,
    SubscriptionAction,
    SubscriptionStatus,
    SubscriptionView,
)
from services.relay.service import DEFAULT_HISTORY_LIMIT, TradeRelayService

router = APIRouter(tags=["Channels"])


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    payload: dict = Body(...),
    relay: TradeRelayService = Depends(get_relay_service),
) -> SubscribeResponse:
    """Request (or re-request) access to a channel"""
    return await relay.subscribe(payload)


@router.patch("/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: int,
    body: SubscriptionAction,
    owner_id: str = Depends(get_current_owner),
    relay: TradeRelayService = Depends(get_relay_service),
):
    """Approve, reject or revoke a subscriber on one of the caller's channels"""
    status: SubscriptionStatus = await relay.set_subscription_state(owner_id, subscription_id, body.action)
    return {"ok": True, "id": subscription_id, "status": status.value}


@router.get("/channels/{code}", response_model=ChannelView)
async def get_channel(
    code: str,
    relay: TradeRelayService = Depends(get_relay_service),
) -> ChannelView:
    return await relay.get_channel(code)


@router.get("/channels/{code}/history", response_model=ChannelHistory)
async def get_channel_history(
    code: str,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=5000),
    relay: TradeRelayService = Depends(get_relay_service),
) -> ChannelHistory:
    return await relay.channel_history(code, limit)


@router.get("/channels/{code}/subscriptions", response_model=List[SubscriptionView])
async def list_channel_subscriptions(
    code: str,
    owner_id: str = Depends(get_current_owner),
    relay: TradeRelayService = Depends(get_relay_service),
) -> List[SubscriptionView]:
    return await relay.list_subscriptions(owner_id, code)
