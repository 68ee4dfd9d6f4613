from fastapi import APIRouter, Depends
from typing import Dict, Any
import platform
import psutil
from datetime import datetime, timezone

from api.dependencies import get_coordinator_service, get_settings
from api.schemas.responses import StandardResponse, SystemStatusResponse
from core.config.settings import Settings
from services.coordinator.service import CoordinatorService

router = APIRouter(prefix="/system", tags=["System"])


@router.get("/status", response_model=SystemStatusResponse)
async def get_system_status(
    settings: Settings = Depends(get_settings),
    service: CoordinatorService = Depends(get_coordinator_service),
) -> SystemStatusResponse:
    """Agent connectivity: configured, connected (recent heartbeat), last seen"""
    connectivity = service.connectivity()
    return SystemStatusResponse(
        **connectivity.model_dump(),
        service=settings.app_name,
        version=settings.version,
        environment=str(getattr(settings.environment, "value", settings.environment)),
    )


@router.get("/info", response_model=StandardResponse[Dict[str, Any]])
async def get_system_info(
    settings: Settings = Depends(get_settings)
):
    """Get system information and environment details"""
    memory = psutil.virtual_memory()
    system_info = {
        "platform": {
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "python_version": platform.python_version()
        },
        "hardware": {
            "cpu_count": psutil.cpu_count(logical=True),
            "memory_total_gb": round(memory.total / (1024**3), 2),
            "memory_usage_percent": memory.percent,
        },
        "application": {
            "environment": str(getattr(settings.environment, "value", settings.environment)),
            "version": settings.version,
            "web_only": settings.web_only_mode,
            "checked_at": datetime.now(timezone.utc).isoformat()
        }
    }

    return StandardResponse(
        status="success",
        data=system_info,
        message="System information retrieved",
    )
