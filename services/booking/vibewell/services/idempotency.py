"""
Idempotency key service.

Guards a side-effecting operation so that, for a given (scope, key), the
effect runs at most once. The claim is a unique-constrained INSERT, so two
API instances racing on the same key cannot both proceed.
"""
import asyncio
import hashlib
import inspect
import json
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vibewell.models.idempotency import IdempotencyRecord, IdempotencyStatus
from vibewell.obs.errors import BookingError, IdempotencyConflict, TransientFailure, error_class_for
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics
from vibewell.utils.datetime import Clock, utcnow

logger = get_logger(__name__)

# Fields that differ between logically identical retries
VOLATILE_FIELDS = frozenset({"timestamp", "created_at", "nonce", "request_id"})

# Recorded when the caller gave up waiting; the operation may still have had effects
INTERRUPTED_DETAIL = "The request timed out before the operation completed"


def canonicalize(payload: Dict[str, Any], exclude: Iterable[str] = VOLATILE_FIELDS) -> str:
    excluded = set(exclude)
    normalized = {k: v for k, v in payload.items() if k not in excluded}
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)


def hash_payload(payload: Dict[str, Any], exclude: Iterable[str] = VOLATILE_FIELDS) -> str:
    """SHA256 of the canonical JSON form of a payload (sorted keys, volatile fields removed)."""
    return hashlib.sha256(canonicalize(payload, exclude).encode()).hexdigest()


def derive_idempotency_key(
    payload: Dict[str, Any],
    token: Optional[str] = None,
    exclude: Iterable[str] = VOLATILE_FIELDS,
) -> str:
    """
    Return the key guarding an operation on ``payload``.

    A caller-supplied token always wins; otherwise the key is derived from
    the semantically relevant part of the payload.
    """
    if token:
        return token
    return hash_payload(payload, exclude)


class IdempotencyService:
    """DB-backed idempotency records, one namespace per ``scope``."""

    def __init__(self, db: Session, scope: str, clock: Clock = utcnow):
        self.db = db
        self.scope = scope
        self.clock = clock

    def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        return self.db.query(IdempotencyRecord).filter_by(scope=self.scope, idempotency_key=key).first()

    async def with_idempotency(
        self,
        key: str,
        operation: Callable[[], Any],
        request_hash: Optional[str] = None,
    ) -> Any:
        """
        Run ``operation`` once per key and return its JSON-serializable result.

        - terminal record: replay the stored result, or re-raise the stored failure
        - in-progress record: IdempotencyConflict (no waiting)
        - no record: claim, run, finalize as succeeded or failed

        Failed records are kept, so retrying with the same key returns the
        recorded failure. Callers wanting a fresh attempt must use a new key.
        """
        existing = self.get_record(key)
        if existing is not None:
            return self._replay(existing, key, request_hash)

        record = self._claim(key, request_hash)
        if record is None:
            # Lost the insert race to a concurrent caller
            return self._replay(self.get_record(key), key, request_hash)

        metrics.record_idempotency(self.scope, "executed")
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except BookingError as e:
            self._finalize_failure(record.id, e.error_code, e.detail, e.extensions)
            raise
        except asyncio.CancelledError:
            self._finalize_failure(record.id, TransientFailure.error_code, INTERRUPTED_DETAIL, {})
            raise
        except Exception as e:
            self._finalize_failure(record.id, "internal_error", str(e), {})
            raise

        self._finalize_success(record.id, result)
        return result

    def _claim(self, key: str, request_hash: Optional[str]) -> Optional[IdempotencyRecord]:
        record = IdempotencyRecord(
            scope=self.scope,
            idempotency_key=key,
            request_hash=request_hash,
            status=IdempotencyStatus.IN_PROGRESS,
            created_at=self.clock(),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        self.db.refresh(record)
        return record

    def _replay(self, record: Optional[IdempotencyRecord], key: str, request_hash: Optional[str]) -> Any:
        if record is None:
            # The winning claim vanished (purged); treat as in flight
            raise IdempotencyConflict("Idempotency key is being processed, retry later", idempotency_key=key)

        if request_hash and record.request_hash and record.request_hash != request_hash:
            metrics.record_idempotency(self.scope, "mismatch")
            raise IdempotencyConflict(
                "Idempotency key was already used with a different request payload",
                idempotency_key=key,
            )

        if not record.is_terminal:
            metrics.record_idempotency(self.scope, "in_progress")
            raise IdempotencyConflict(
                "A request with this idempotency key is still in progress",
                idempotency_key=key,
            )

        logger.info(
            f"Replaying {record.status.value} result for idempotency key",
            extra={'idempotency_key': key, 'action': self.scope},
        )

        if record.status == IdempotencyStatus.SUCCEEDED:
            metrics.record_idempotency(self.scope, "replayed")
            return json.loads(record.response_body) if record.response_body else None

        metrics.record_idempotency(self.scope, "replayed_failure")
        extensions = json.loads(record.response_body) if record.response_body else {}
        extensions.setdefault("error_code_recorded", record.error_code)
        error_cls = error_class_for(record.error_code)
        raise error_cls.restore(record.error_message or "Operation previously failed", replayed=True, **extensions)

    def _finalize_success(self, record_id: int, result: Any) -> None:
        record = self.db.get(IdempotencyRecord, record_id)
        record.status = IdempotencyStatus.SUCCEEDED
        record.response_body = json.dumps(result, default=str)
        if isinstance(result, dict) and result.get("id") is not None:
            record.resource_id = str(result["id"])
        record.completed_at = self.clock()
        self.db.commit()

    def _finalize_failure(self, record_id: int, error_code: str, message: str, extensions: Dict[str, Any]) -> None:
        self.db.rollback()
        record = self.db.get(IdempotencyRecord, record_id)
        record.status = IdempotencyStatus.FAILED
        record.error_code = error_code
        record.error_message = message
        record.response_body = json.dumps(
            {k: v for k, v in extensions.items() if k != "replayed"},
            default=str,
        )
        record.completed_at = self.clock()
        self.db.commit()


def purge_expired_records(db: Session, ttl_days: int, now=None) -> int:
    """Delete idempotency records older than the retention window."""
    cutoff = (now or utcnow()) - timedelta(days=ttl_days)
    purged = db.query(IdempotencyRecord).filter(
        IdempotencyRecord.created_at < cutoff
    ).delete(synchronize_session=False)
    db.commit()

    metrics.record_idempotency_purged(purged)
    logger.info(f"Cleaned up {purged} expired idempotency records")
    return purged
