"""
Booking slot reservation engine.

State machine: NONE -> PENDING -> {CONFIRMED, CANCELLED}. A PENDING hold
expires to CANCELLED after the hold duration unless confirmed.

Every transition is a conditional UPDATE (or a unique-constrained INSERT),
never a read followed by a separate write. The partial unique index on the
active slot is the only guard against double booking.
"""
from datetime import date, time, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vibewell.config import settings
from vibewell.models.reservation import ACTIVE_STATUSES, CancelReason, Reservation, ReservationStatus
from vibewell.obs.errors import InvalidStateTransition, NotFoundError, ReservationExpired, SlotConflict
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics
from vibewell.utils.datetime import Clock, utcnow

logger = get_logger(__name__)


def _slot_filter(business_id: str, service_id: str, slot_date: date, slot_time: time):
    return and_(
        Reservation.business_id == business_id,
        Reservation.service_id == service_id,
        Reservation.slot_date == slot_date,
        Reservation.slot_time == slot_time,
    )


class ReservationService:
    def __init__(self, db: Session, hold_minutes: Optional[int] = None, clock: Clock = utcnow):
        self.db = db
        self.hold = timedelta(minutes=hold_minutes or settings.RESERVATION_HOLD_MINUTES)
        self.clock = clock

    def get(self, reservation_id: str) -> Reservation:
        reservation = self.db.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found", reservation_id=reservation_id)
        return reservation

    def reserve(
        self,
        business_id: str,
        service_id: str,
        slot_date: date,
        slot_time: time,
        customer_id: str,
    ) -> Reservation:
        """
        Hold a slot in PENDING state.

        Expired holds on the same slot are cancelled in the same transaction
        so an abandoned hold never blocks a new customer waiting on the sweeper.
        """
        now = self.clock()
        slot = _slot_filter(business_id, service_id, slot_date, slot_time)

        self.db.query(Reservation).filter(
            slot,
            Reservation.status == ReservationStatus.PENDING,
            Reservation.hold_expires_at <= now,
        ).update(
            {
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancel_reason: CancelReason.EXPIRED,
                Reservation.cancelled_at: now,
                Reservation.updated_at: now,
            },
            synchronize_session=False,
        )

        reservation = Reservation(
            business_id=business_id,
            service_id=service_id,
            slot_date=slot_date,
            slot_time=slot_time,
            customer_id=customer_id,
            status=ReservationStatus.PENDING,
            hold_expires_at=now + self.hold,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            metrics.record_reservation("conflict")
            logger.info(
                "Slot already held",
                extra={'business_id': business_id, 'subject': customer_id},
            )
            raise SlotConflict(
                "The requested slot is no longer available. Please choose another time.",
                business_id=business_id,
                service_id=service_id,
                slot_date=slot_date.isoformat(),
                slot_time=slot_time.strftime("%H:%M"),
            )

        self.db.refresh(reservation)
        metrics.record_reservation("reserved")
        logger.info(
            "Slot reserved",
            extra={'reservation_id': reservation.id, 'business_id': business_id, 'subject': customer_id},
        )
        return reservation

    def confirm(self, reservation_id: str) -> Reservation:
        """PENDING -> CONFIRMED while the hold is still valid. Confirming twice is a no-op."""
        now = self.clock()
        updated = self.db.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.PENDING,
            Reservation.hold_expires_at > now,
        ).update(
            {
                Reservation.status: ReservationStatus.CONFIRMED,
                Reservation.confirmed_at: now,
                Reservation.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        reservation = self.get(reservation_id)
        if updated or reservation.status == ReservationStatus.CONFIRMED:
            if updated:
                metrics.record_reservation("confirmed")
                logger.info("Reservation confirmed", extra={'reservation_id': reservation_id})
            return reservation

        if reservation.status == ReservationStatus.PENDING:
            # Hold ran out before the sweeper reached it
            self.release(reservation_id, CancelReason.EXPIRED)
            raise ReservationExpired(
                "The reservation hold has expired", reservation_id=reservation_id
            )

        if reservation.cancel_reason == CancelReason.EXPIRED:
            raise ReservationExpired("The reservation hold has expired", reservation_id=reservation_id)

        raise InvalidStateTransition(
            f"Cannot confirm a {reservation.status.value} reservation",
            reservation_id=reservation_id,
            current_status=reservation.status.value,
        )

    def cancel(self, reservation_id: str, reason: CancelReason = CancelReason.CUSTOMER_CANCELLED) -> Reservation:
        """Cancel a PENDING or CONFIRMED reservation."""
        now = self.clock()
        updated = self.db.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status.in_(ACTIVE_STATUSES),
        ).update(
            {
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancel_reason: reason,
                Reservation.cancelled_at: now,
                Reservation.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        reservation = self.get(reservation_id)
        if not updated:
            raise InvalidStateTransition(
                "Reservation is already cancelled",
                reservation_id=reservation_id,
                current_status=reservation.status.value,
            )

        metrics.record_reservation("cancelled")
        logger.info(
            f"Reservation cancelled ({reason.value})",
            extra={'reservation_id': reservation_id},
        )
        return reservation

    def release(self, reservation_id: str, reason: CancelReason = CancelReason.PAYMENT_FAILED) -> bool:
        """
        Cancel a reservation only if it is still PENDING.

        Returns False when the reservation already moved on, so a compensating
        release can never undo a confirmation.
        """
        now = self.clock()
        updated = self.db.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.PENDING,
        ).update(
            {
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancel_reason: reason,
                Reservation.cancelled_at: now,
                Reservation.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        if updated:
            metrics.record_reservation("released")
            logger.info(
                f"Reservation released ({reason.value})",
                extra={'reservation_id': reservation_id},
            )
        return bool(updated)

    def expire_stale(self, now=None) -> int:
        """Cancel every PENDING reservation whose hold has run out."""
        now = now or self.clock()
        expired = self.db.query(Reservation).filter(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.hold_expires_at <= now,
        ).update(
            {
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancel_reason: CancelReason.EXPIRED,
                Reservation.cancelled_at: now,
                Reservation.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        metrics.record_reservations_expired(expired)
        if expired:
            logger.info(f"Expired {expired} stale reservation holds")
        return expired

    def _active_at(self, now):
        # PENDING rows past their hold count as free even before the sweeper runs
        return or_(
            Reservation.status == ReservationStatus.CONFIRMED,
            and_(Reservation.status == ReservationStatus.PENDING, Reservation.hold_expires_at > now),
        )

    def is_slot_available(self, business_id: str, service_id: str, slot_date: date, slot_time: time) -> bool:
        taken = self.db.query(Reservation.id).filter(
            _slot_filter(business_id, service_id, slot_date, slot_time),
            self._active_at(self.clock()),
        ).first()
        return taken is None

    def booked_times(self, business_id: str, service_id: str, slot_date: date) -> List[time]:
        rows = self.db.query(Reservation.slot_time).filter(
            Reservation.business_id == business_id,
            Reservation.service_id == service_id,
            Reservation.slot_date == slot_date,
            self._active_at(self.clock()),
        ).order_by(Reservation.slot_time).all()
        return [row[0] for row in rows]

    def list_for_business(
        self,
        business_id: str,
        slot_date: Optional[date] = None,
        status: Optional[ReservationStatus] = None,
        limit: int = 100,
    ) -> List[Reservation]:
        query = self.db.query(Reservation).filter(Reservation.business_id == business_id)
        if slot_date is not None:
            query = query.filter(Reservation.slot_date == slot_date)
        if status is not None:
            query = query.filter(Reservation.status == status)
        return query.order_by(Reservation.slot_date, Reservation.slot_time).limit(limit).all()
