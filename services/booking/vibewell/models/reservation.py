import enum
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Enum, Index, String, Time, text

from vibewell.database import Base
from vibewell.utils.datetime import utcnow


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class CancelReason(str, enum.Enum):
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"
    CUSTOMER_CANCELLED = "customer_cancelled"
    REFUNDED = "refunded"


ACTIVE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)

_ACTIVE_SLOT_PREDICATE = "status IN ('pending', 'confirmed')"


class Reservation(Base):
    """
    A hold on one bookable slot (business, service, date, time).

    At most one PENDING or CONFIRMED row may exist per slot; the partial
    unique index below is what enforces it under concurrent inserts.
    """

    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_active_slot",
            "business_id",
            "service_id",
            "slot_date",
            "slot_time",
            unique=True,
            sqlite_where=text(_ACTIVE_SLOT_PREDICATE),
            postgresql_where=text(_ACTIVE_SLOT_PREDICATE),
        ),
        Index("ix_reservations_status_hold", "status", "hold_expires_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(Time, nullable=False)
    customer_id = Column(String, nullable=False, index=True)

    status = Column(
        Enum(
            ReservationStatus,
            native_enum=False,
            name="reservation_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    cancel_reason = Column(
        Enum(
            CancelReason,
            native_enum=False,
            name="reservation_cancel_reason",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=True,
    )

    hold_expires_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def is_hold_expired(self, now) -> bool:
        return self.status == ReservationStatus.PENDING and self.hold_expires_at <= now

    def __repr__(self):
        return (
            f"<Reservation(id={self.id}, slot={self.business_id}/{self.service_id}/"
            f"{self.slot_date} {self.slot_time}, status={self.status})>"
        )
