"""
Publish/fetch endpoints used by the trading plugin running inside each
terminal. Paths are fixed by the plugin build and sit outside ``/api/v1``.
"""

from fastapi import APIRouter, Body, Depends, Query
from typing import Optional

from api.dependencies import get_relay_service
from core.schemas.relay import FetchResponse, PushResult
from core.utils.exceptions import PayloadValidationError
from services.relay.service import TradeRelayService

router = APIRouter(tags=["Relay"])


@router.post("/master/push", response_model=PushResult)
async def push(
    payload: dict = Body(...),
    relay: TradeRelayService = Depends(get_relay_service),
) -> PushResult:
    """Replace the channel's open set with the pushed snapshot"""
    return await relay.push(payload)


@router.get("/slave/fetch/{code}", response_model=FetchResponse)
async def fetch(
    code: str,
    subscriber_id: Optional[str] = Query(None),
    slave_id: Optional[str] = Query(None),
    lot_mode: str = Query("MIRROR"),
    relay: TradeRelayService = Depends(get_relay_service),
) -> FetchResponse:
    subscriber = subscriber_id or slave_id
    if not subscriber:
        raise PayloadValidationError("subscriber_id is required")
    return await relay.fetch(code, subscriber, lot_mode)

