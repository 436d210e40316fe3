"""
Idempotency record model for guarding side-effecting operations.
"""
import enum

from sqlalchemy import Column, DateTime, Enum, Index, Integer, String, Text, UniqueConstraint

from vibewell.database import Base
from vibewell.utils.datetime import utcnow


class IdempotencyStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IdempotencyRecord(Base):
    """Model for storing idempotency records."""

    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(100), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    request_hash = Column(String(64), nullable=True)
    status = Column(
        Enum(
            IdempotencyStatus,
            native_enum=False,
            name="idempotency_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=IdempotencyStatus.IN_PROGRESS,
    )
    resource_id = Column(String, nullable=True)
    response_body = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Indexes for performance
    __table_args__ = (
        UniqueConstraint("scope", "idempotency_key", name="uq_idempotency_scope_key"),
        Index("idx_idempotency_created", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != IdempotencyStatus.IN_PROGRESS

    def __repr__(self):
        return f"<IdempotencyRecord(id={self.id}, scope={self.scope}, key={self.idempotency_key}, status={self.status})>"
