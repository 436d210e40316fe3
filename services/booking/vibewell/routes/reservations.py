"""
Reservation endpoints: hold, confirm, cancel and availability of booking slots.
"""
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from vibewell.deps.services import get_reservation_service
from vibewell.models.reservation import CancelReason
from vibewell.middleware.rate_limiter import enforce_rate_limit
from vibewell.schemas.reservations import ReservationCancel, ReservationCreate, ReservationOut, SlotAvailability
from vibewell.schemas.responses import APIResponse, meta_for
from vibewell.services.reservation_service import ReservationService

router = APIRouter(
    prefix="/api/v1/reservations",
    tags=["reservations"],
    dependencies=[Depends(enforce_rate_limit("reservations"))],
)


@router.post("", response_model=APIResponse[ReservationOut], status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    request: Request,
    service: ReservationService = Depends(get_reservation_service),
):
    """Hold a slot in PENDING state. 409 when the slot is already held."""
    reservation = service.reserve(
        business_id=payload.business_id,
        service_id=payload.service_id,
        slot_date=payload.slot_date,
        slot_time=payload.slot_time,
        customer_id=payload.customer_id,
    )
    return APIResponse(
        data=ReservationOut.model_validate(reservation),
        meta=meta_for(request),
        message="Slot held until hold_expires_at; confirm or pay before then",
    )


@router.get("/availability", response_model=APIResponse[SlotAvailability])
async def get_availability(
    request: Request,
    business_id: str = Query(...),
    service_id: str = Query(...),
    slot_date: date = Query(...),
    slot_time: Optional[time] = Query(None),
    service: ReservationService = Depends(get_reservation_service),
):
    availability = SlotAvailability(
        business_id=business_id,
        service_id=service_id,
        slot_date=slot_date,
        slot_time=slot_time,
        booked_times=service.booked_times(business_id, service_id, slot_date),
    )
    if slot_time is not None:
        availability.available = service.is_slot_available(business_id, service_id, slot_date, slot_time)
    return APIResponse(data=availability, meta=meta_for(request))


@router.get("/{reservation_id}", response_model=APIResponse[ReservationOut])
async def get_reservation(
    reservation_id: str,
    request: Request,
    service: ReservationService = Depends(get_reservation_service),
):
    return APIResponse(data=ReservationOut.model_validate(service.get(reservation_id)), meta=meta_for(request))


@router.post("/{reservation_id}/confirm", response_model=APIResponse[ReservationOut])
async def confirm_reservation(
    reservation_id: str,
    request: Request,
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = service.confirm(reservation_id)
    return APIResponse(data=ReservationOut.model_validate(reservation), meta=meta_for(request))


@router.post("/{reservation_id}/cancel", response_model=APIResponse[ReservationOut])
async def cancel_reservation(
    reservation_id: str,
    request: Request,
    payload: Optional[ReservationCancel] = None,
    service: ReservationService = Depends(get_reservation_service),
):
    reason = CancelReason((payload or ReservationCancel()).reason)
    reservation = service.cancel(reservation_id, reason)
    return APIResponse(data=ReservationOut.model_validate(reservation), meta=meta_for(request))
