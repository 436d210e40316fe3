"""
Tests for the Celery maintenance tasks (run eagerly, no broker).
"""
from datetime import timedelta
from unittest.mock import patch

from vibewell.models.idempotency import IdempotencyRecord, IdempotencyStatus
from vibewell.models.reservation import Reservation, ReservationStatus
from vibewell.tasks.maintenance_tasks import (
    expire_stale_reservations,
    purge_idempotency_records,
    purge_rate_limit_events,
)
from vibewell.utils.datetime import utcnow


class TestMaintenanceTasks:
    """Test periodic cleanup tasks."""

    def test_expire_stale_reservations(self, session_factory, make_reservation):
        stale = make_reservation(hold_expires_at=utcnow() - timedelta(minutes=2))

        with patch("vibewell.tasks.maintenance_tasks.SessionLocal", session_factory):
            result = expire_stale_reservations.apply().get()

        assert result == {"success": True, "expired_count": 1}
        db = session_factory()
        try:
            assert db.get(Reservation, stale.id).status == ReservationStatus.CANCELLED
        finally:
            db.close()

    def test_purge_idempotency_records(self, session_factory, db_session):
        db_session.add(IdempotencyRecord(
            scope="payments",
            idempotency_key="ancient",
            status=IdempotencyStatus.SUCCEEDED,
            created_at=utcnow() - timedelta(days=365),
        ))
        db_session.commit()

        with patch("vibewell.tasks.maintenance_tasks.SessionLocal", session_factory):
            result = purge_idempotency_records.apply().get()

        assert result == {"success": True, "purged_count": 1}

    def test_purge_rate_limit_events_without_redis(self):
        result = purge_rate_limit_events.apply().get()
        assert result == {"success": True, "purged_count": 0}
