from datetime import date, datetime, time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from vibewell.models.reservation import CancelReason, ReservationStatus


class ReservationCreate(BaseModel):
    business_id: str = Field(..., min_length=1, max_length=255)
    service_id: str = Field(..., min_length=1, max_length=255)
    slot_date: date = Field(..., description="Slot date (YYYY-MM-DD)")
    slot_time: time = Field(..., description="Slot start time (HH:MM)")
    customer_id: str = Field(..., min_length=1, max_length=255)

    class Config:
        json_schema_extra = {
            "example": {
                "business_id": "B1",
                "service_id": "S1",
                "slot_date": "2024-06-01",
                "slot_time": "10:00",
                "customer_id": "cust_123"
            }
        }


class ReservationCancel(BaseModel):
    reason: Literal["customer_cancelled"] = Field(
        "customer_cancelled",
        description="Only customer cancellations can be requested through the API",
    )


class ReservationOut(BaseModel):
    id: str
    business_id: str
    service_id: str
    slot_date: date
    slot_time: time
    customer_id: str
    status: ReservationStatus
    cancel_reason: Optional[CancelReason] = None
    hold_expires_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SlotAvailability(BaseModel):
    business_id: str
    service_id: str
    slot_date: date
    slot_time: Optional[time] = None
    available: Optional[bool] = None
    booked_times: List[time] = Field(default_factory=list)
