import enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text

from vibewell.database import Base
from vibewell.utils.datetime import utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# One-directional: pending -> completed|failed, completed -> refunded
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


class PaymentTransaction(Base):
    """A single charge against a reservation. Amounts are in minor units."""

    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index("ix_payment_transactions_reservation_status", "reservation_id", "status"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    reservation_id = Column(String, ForeignKey("reservations.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(
        Enum(
            PaymentStatus,
            native_enum=False,
            name="payment_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    idempotency_key = Column(String(255), nullable=False, index=True)
    gateway_payment_id = Column(String, nullable=True, index=True)
    gateway_refund_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    failure_code = Column(String(100), nullable=True)
    failure_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def can_transition_to(self, status: PaymentStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[PaymentStatus(self.status)]

    def __repr__(self):
        return f"<PaymentTransaction(id={self.id}, reservation={self.reservation_id}, status={self.status})>"
