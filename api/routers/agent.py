"""
Agent control-plane endpoints.

Every route requires the shared agent secret in ``x-agent-secret``. With no
secret configured the coordinator runs web-only and these answer 503.
"""

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError

from api.dependencies import get_coordinator_service, require_agent
from core.logging import get_api_logger_safe
from core.schemas.control_plane import HeartbeatAck, PendingQueue, StatusReport, StatusReportAck, StopQueue
from core.utils.exceptions import PayloadValidationError
from services.coordinator.service import CoordinatorService

router = APIRouter(prefix="/agent", tags=["Agent"], dependencies=[Depends(require_agent)])

api_logger = get_api_logger_safe("agent_api")


@router.post("/heartbeat", response_model=HeartbeatAck)
async def heartbeat(
    service: CoordinatorService = Depends(get_coordinator_service),
) -> HeartbeatAck:
    return HeartbeatAck(server_time=service.record_heartbeat())


@router.get("/pending", response_model=PendingQueue)
async def pending(
    service: CoordinatorService = Depends(get_coordinator_service),
) -> PendingQueue:
    # Passwords are revealed only in JSON serialization
    return await service.pending_accounts()


@router.get("/stop-queue", response_model=StopQueue)
async def stop_queue(
    service: CoordinatorService = Depends(get_coordinator_service),
) -> StopQueue:
    return await service.stop_queue()


@router.post("/status", response_model=StatusReportAck)
async def report_status(
    payload: dict = Body(...),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> StatusReportAck:
    try:
        report = StatusReport.model_validate(payload)
    except ValidationError as e:
        raise PayloadValidationError(
            "Malformed status report",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e
    return await service.report_status(report.account_id, report.status)
