from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from vibewell.models.payment_transaction import PaymentStatus


class PaymentCreate(BaseModel):
    reservation_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="Amount in minor currency units (cents)")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 currency code")
    idempotency_key: Optional[str] = Field(
        None,
        min_length=10,
        max_length=255,
        description="Caller token; the Idempotency-Key header takes precedence",
    )
    payment_method: str = Field(..., min_length=1, description="Gateway payment method id, confirmed server-side")
    metadata: Dict[str, str] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "reservation_id": "6f1c2a4e-0d5b-4c1a-9d7e-2b3f4a5c6d7e",
                "amount": 4500,
                "currency": "usd",
                "idempotency_key": "booking-X-attempt-1",
                "payment_method": "pm_card_visa"
            }
        }


class RefundCreate(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class PaymentOut(BaseModel):
    id: str
    reservation_id: str
    amount: int
    currency: str
    status: PaymentStatus
    idempotency_key: str
    gateway_payment_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    attempts: int
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
