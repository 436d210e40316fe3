"""
Payment transaction coordinator.

Ties the reservation engine, the idempotency service, the retry executor and
the payment gateway together:

    with_idempotency(key):
        create PENDING transaction
        with_retry(gateway.create_payment_intent)
        success   -> transaction COMPLETED, reservation CONFIRMED
        failure   -> transaction FAILED, reservation released (payment_failed)
        timed out -> both left PENDING for the expiry sweeper

The idempotency key is forwarded to the gateway so a retried charge is
deduplicated on the provider side as well.
"""
import asyncio
import functools
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from vibewell.config import settings
from vibewell.models.payment_transaction import PaymentStatus, PaymentTransaction
from vibewell.models.reservation import CancelReason, ReservationStatus
from vibewell.obs.errors import (
    InvalidStateTransition,
    NotFoundError,
    PaymentDeclined,
    PermanentFailure,
    ReservationExpired,
    RetryExhausted,
    TransientFailure,
)
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics
from vibewell.services.idempotency import IdempotencyService, derive_idempotency_key, hash_payload
from vibewell.services.payment_gateway import GENERIC_DECLINE_MESSAGE, GatewayDecline, GatewayResult, PaymentGateway
from vibewell.services.reservation_service import ReservationService
from vibewell.services.retry import is_timeout, with_retry
from vibewell.utils.datetime import Clock, utcnow

logger = get_logger(__name__)

IDEMPOTENCY_SCOPE = "payments"


@dataclass
class PaymentRequest:
    reservation_id: str
    amount: int
    currency: str
    idempotency_key: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def idempotency_payload(self) -> Dict[str, object]:
        """The part of the request that makes two submissions the same payment."""
        return {
            "reservation_id": self.reservation_id,
            "amount": self.amount,
            "currency": self.currency.lower(),
        }


class PaymentCoordinator:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        reservations: Optional[ReservationService] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        gateway_timeout: Optional[float] = None,
        backoff: str = "linear",
        sleep=asyncio.sleep,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.reservations = reservations or ReservationService(db, clock=clock)
        self.idempotency = IdempotencyService(db, IDEMPOTENCY_SCOPE, clock=clock)
        self.max_attempts = max_attempts or settings.PAYMENT_MAX_ATTEMPTS
        self.base_delay = settings.PAYMENT_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.gateway_timeout = settings.GATEWAY_TIMEOUT_SECONDS if gateway_timeout is None else gateway_timeout
        self.backoff = backoff
        self.sleep = sleep

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.db.get(PaymentTransaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Payment transaction {transaction_id} not found", transaction_id=transaction_id)
        return transaction

    def list_for_reservation(self, reservation_id: str) -> List[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(
            PaymentTransaction.reservation_id == reservation_id
        ).order_by(PaymentTransaction.created_at).all()

    async def process_payment(self, request: PaymentRequest) -> PaymentTransaction:
        """
        Charge for a PENDING reservation exactly once per idempotency key.

        A second call with the same key returns the first call's transaction
        without reaching the gateway.
        """
        # Unknown reservations are rejected before a key is claimed
        self.reservations.get(request.reservation_id)

        payload = request.idempotency_payload()
        key = derive_idempotency_key(payload, token=request.idempotency_key)

        result = await self.idempotency.with_idempotency(
            key,
            lambda: self._charge(request, key),
            request_hash=hash_payload(payload),
        )
        return self.get_transaction(result["id"])

    async def _charge(self, request: PaymentRequest, key: str) -> Dict[str, str]:
        reservation = self.reservations.get(request.reservation_id)
        if reservation.status != ReservationStatus.PENDING:
            raise InvalidStateTransition(
                f"Reservation is {reservation.status.value}, not awaiting payment",
                reservation_id=reservation.id,
                current_status=reservation.status.value,
            )
        if reservation.is_hold_expired(self.clock()):
            self.reservations.release(reservation.id, CancelReason.EXPIRED)
            raise ReservationExpired("The reservation hold has expired", reservation_id=reservation.id)

        now = self.clock()
        transaction = PaymentTransaction(
            reservation_id=reservation.id,
            amount=request.amount,
            currency=request.currency.lower(),
            status=PaymentStatus.PENDING,
            idempotency_key=key,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)
        transaction_id = transaction.id

        log_extra = {
            'transaction_id': transaction_id,
            'reservation_id': reservation.id,
            'idempotency_key': key,
        }
        logger.info("Payment started", extra=log_extra)

        attempts = {"count": 1}

        def count_retry(attempt, error):
            attempts["count"] = attempt + 1

        metadata = dict(request.metadata)
        metadata.update({"reservation_id": reservation.id, "transaction_id": transaction_id})
        charge = functools.partial(
            self.gateway.create_payment_intent,
            request.amount,
            request.currency.lower(),
            metadata,
            idempotency_key=key,
            payment_method=request.payment_method,
        )

        try:
            result: GatewayResult = await with_retry(
                charge,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                backoff=self.backoff,
                timeout=self.gateway_timeout,
                operation_name="create_payment_intent",
                sleep=self.sleep,
                on_retry=count_retry,
            )
        except RetryExhausted as e:
            if is_timeout(e.last_error):
                # Outcome unknown: the charge may have gone through. Leave the
                # transaction and hold PENDING for the sweeper and reconciliation.
                self._record_attempts(transaction_id, attempts["count"])
                metrics.record_payment("unknown")
                logger.error("Payment outcome unknown after gateway timeouts", extra=log_extra)
                raise TransientFailure(
                    "The payment provider did not respond in time. The payment outcome is not yet known.",
                    transaction_id=transaction_id,
                    reservation_id=reservation.id,
                )
            self._fail(transaction_id, reservation.id, "retry_exhausted", str(e.last_error), attempts["count"])
            raise PaymentDeclined(
                GENERIC_DECLINE_MESSAGE,
                transaction_id=transaction_id,
                reservation_id=reservation.id,
                attempts=attempts["count"],
            )
        except GatewayDecline as e:
            self._fail(transaction_id, reservation.id, e.decline_code or e.error_code, e.detail, attempts["count"])
            raise PaymentDeclined(
                e.safe_message or GENERIC_DECLINE_MESSAGE,
                transaction_id=transaction_id,
                reservation_id=reservation.id,
                decline_code=e.decline_code,
            )
        except PermanentFailure as e:
            self._fail(transaction_id, reservation.id, e.error_code, e.detail, attempts["count"])
            raise PaymentDeclined(
                GENERIC_DECLINE_MESSAGE,
                transaction_id=transaction_id,
                reservation_id=reservation.id,
            )

        if not result.succeeded:
            self._fail(
                transaction_id,
                reservation.id,
                result.status,
                f"Payment intent ended in status {result.status}",
                attempts["count"],
                gateway_payment_id=result.id,
            )
            raise PaymentDeclined(
                GENERIC_DECLINE_MESSAGE,
                transaction_id=transaction_id,
                reservation_id=reservation.id,
            )

        self._transition(
            transaction_id,
            PaymentStatus.PENDING,
            PaymentStatus.COMPLETED,
            gateway_payment_id=result.id,
            attempts=attempts["count"],
        )
        metrics.record_payment("completed")
        logger.info("Payment completed", extra=log_extra)

        try:
            self.reservations.confirm(reservation.id)
        except (ReservationExpired, InvalidStateTransition):
            # Charged for a hold that is gone: refund so the customer is not billed
            logger.error("Reservation lost while payment was in flight, refunding", extra=log_extra)
            await self.refund_payment(transaction_id, reason="reservation_unavailable")
            raise

        return {"id": transaction_id, "status": PaymentStatus.COMPLETED.value}

    def _record_attempts(self, transaction_id: str, attempts: int) -> None:
        self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).update(
            {PaymentTransaction.attempts: attempts, PaymentTransaction.updated_at: self.clock()},
            synchronize_session=False,
        )
        self.db.commit()

    def _fail(
        self,
        transaction_id: str,
        reservation_id: str,
        failure_code: str,
        failure_message: str,
        attempts: int,
        gateway_payment_id: Optional[str] = None,
    ) -> None:
        """Mark the transaction failed and release the hold so the slot is bookable again."""
        self._transition(
            transaction_id,
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
            failure_code=failure_code,
            failure_message=failure_message,
            attempts=attempts,
            gateway_payment_id=gateway_payment_id,
        )
        self.reservations.release(reservation_id, CancelReason.PAYMENT_FAILED)
        metrics.record_payment("failed")
        logger.warning(
            f"Payment failed ({failure_code}), reservation released",
            extra={'transaction_id': transaction_id, 'reservation_id': reservation_id},
        )

    def _transition(self, transaction_id: str, from_status: PaymentStatus, to_status: PaymentStatus, **values) -> None:
        changes = {getattr(PaymentTransaction, name): value for name, value in values.items()}
        changes[PaymentTransaction.status] = to_status
        changes[PaymentTransaction.updated_at] = self.clock()

        updated = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.status == from_status,
        ).update(changes, synchronize_session=False)
        self.db.commit()

        if not updated:
            current = self.get_transaction(transaction_id)
            raise InvalidStateTransition(
                f"Cannot move a {current.status.value} transaction to {to_status.value}",
                transaction_id=transaction_id,
                current_status=current.status.value,
            )

    async def refund_payment(self, transaction_id: str, reason: Optional[str] = None) -> PaymentTransaction:
        """COMPLETED -> REFUNDED through the gateway; the reservation is cancelled."""
        transaction = self.get_transaction(transaction_id)
        if transaction.status == PaymentStatus.REFUNDED:
            return transaction
        if not transaction.can_transition_to(PaymentStatus.REFUNDED):
            raise InvalidStateTransition(
                f"Cannot refund a {transaction.status.value} transaction",
                transaction_id=transaction_id,
                current_status=transaction.status.value,
            )

        refund = functools.partial(
            self.gateway.refund,
            transaction.gateway_payment_id,
            idempotency_key=f"refund-{transaction_id}",
            reason=reason,
        )
        result: GatewayResult = await with_retry(
            refund,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            backoff=self.backoff,
            timeout=self.gateway_timeout,
            operation_name="refund",
            sleep=self.sleep,
        )

        self._transition(
            transaction_id,
            PaymentStatus.COMPLETED,
            PaymentStatus.REFUNDED,
            gateway_refund_id=result.id,
        )
        metrics.record_payment("refunded")
        logger.info(
            "Payment refunded",
            extra={'transaction_id': transaction_id, 'reservation_id': transaction.reservation_id},
        )

        try:
            self.reservations.cancel(transaction.reservation_id, CancelReason.REFUNDED)
        except InvalidStateTransition:
            logger.info(
                "Reservation already cancelled before refund",
                extra={'reservation_id': transaction.reservation_id},
            )

        return self.get_transaction(transaction_id)
