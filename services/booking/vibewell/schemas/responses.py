"""
Standard API response schemas for consistent client experience.
Errors are rendered as RFC-7807 problem details by vibewell.obs.errors.
"""
from pydantic import BaseModel, Field
from typing import Optional, Generic, TypeVar, Dict
from datetime import datetime

from vibewell.utils.datetime import utcnow

T = TypeVar('T')


class APIMetadata(BaseModel):
    """Metadata included in API responses."""
    request_id: Optional[str] = Field(None, description="Request trace ID for debugging")
    timestamp: datetime = Field(default_factory=utcnow, description="Response timestamp")
    version: str = Field(default="v1", description="API version")


class APIResponse(BaseModel, Generic[T]):
    """
    Standard success response wrapper.

    Usage:
        @router.get("/reservations/{reservation_id}")
        async def get_reservation(...) -> APIResponse[ReservationOut]:
            return APIResponse(
                data=ReservationOut.model_validate(reservation),
                meta=APIMetadata(request_id=request.state.trace_id)
            )
    """
    success: bool = Field(True, description="Indicates successful operation")
    data: T = Field(..., description="Response payload")
    meta: Optional[APIMetadata] = Field(None, description="Response metadata")
    message: Optional[str] = Field(None, description="Optional human-readable message")

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "data": {"id": "6f1c2a4e-0d5b-4c1a-9d7e-2b3f4a5c6d7e", "status": "pending"},
                "meta": {
                    "request_id": "req_abc123",
                    "timestamp": "2025-10-09T12:00:00Z",
                    "version": "v1"
                }
            }
        }


class HealthCheckResponse(BaseModel):
    """Standard health check response."""
    status: str = Field(..., description="Service status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    version: str = Field(default="v1")
    checks: Dict[str, bool] = Field(..., description="Individual component health checks")


def meta_for(request) -> APIMetadata:
    return APIMetadata(request_id=getattr(request.state, "trace_id", None))
