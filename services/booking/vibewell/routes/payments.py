"""
Payment endpoints. Charges are idempotent per Idempotency-Key.
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status

from vibewell.config import settings
from vibewell.deps.services import get_payment_coordinator
from vibewell.middleware.rate_limiter import enforce_rate_limit
from vibewell.obs.errors import TransientFailure
from vibewell.schemas.payments import PaymentCreate, PaymentOut, RefundCreate
from vibewell.schemas.responses import APIResponse, meta_for
from vibewell.services.idempotency import INTERRUPTED_DETAIL
from vibewell.services.payment_service import PaymentCoordinator, PaymentRequest

router = APIRouter(
    prefix="/api/v1/payments",
    tags=["payments"],
    dependencies=[Depends(enforce_rate_limit("payments"))],
)


async def _bounded(awaitable):
    try:
        return await asyncio.wait_for(awaitable, settings.REQUEST_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise TransientFailure(INTERRUPTED_DETAIL)


@router.post("", response_model=APIResponse[PaymentOut], status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreate,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """
    Charge a PENDING reservation.

    402 when the gateway declines (the reservation is released), 409 when a
    call with the same key is in flight or reused with a different payload,
    503 when the gateway outcome is unknown.
    """
    transaction = await _bounded(coordinator.process_payment(PaymentRequest(
        reservation_id=payload.reservation_id,
        amount=payload.amount,
        currency=payload.currency,
        idempotency_key=idempotency_key or payload.idempotency_key,
        payment_method=payload.payment_method,
        metadata=payload.metadata,
    )))
    return APIResponse(data=PaymentOut.model_validate(transaction), meta=meta_for(request))


@router.get("/{transaction_id}", response_model=APIResponse[PaymentOut])
async def get_payment(
    transaction_id: str,
    request: Request,
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    return APIResponse(data=PaymentOut.model_validate(coordinator.get_transaction(transaction_id)), meta=meta_for(request))


@router.post("/{transaction_id}/refund", response_model=APIResponse[PaymentOut])
async def refund_payment(
    transaction_id: str,
    request: Request,
    payload: Optional[RefundCreate] = None,
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    reason = payload.reason if payload else None
    transaction = await _bounded(coordinator.refund_payment(transaction_id, reason=reason))
    return APIResponse(data=PaymentOut.model_validate(transaction), meta=meta_for(request))
