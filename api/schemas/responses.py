from pydantic import BaseModel, Field
from typing import Generic, TypeVar, Optional
from datetime import datetime, timezone

from core.schemas.control_plane import AgentConnectivity

T = TypeVar('T')


class StandardResponse(BaseModel, Generic[T]):
    """Standard API response wrapper"""
    status: str = Field(description="Response status")
    message: Optional[str] = Field(None, description="Response message")
    data: Optional[T] = Field(None, description="Response data")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SystemStatusResponse(AgentConnectivity):
    """Coordinator status as shown to account owners"""
    ok: bool = True
    service: str
    version: str
    environment: str
