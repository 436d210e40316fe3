"""
Payment gateway interface and the Stripe implementation.

Gateway calls are blocking; the coordinator runs them in a worker thread
under a per-attempt timeout. Errors are translated into the booking error
taxonomy so the retry executor can tell transient from permanent failures.
"""
import abc
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from vibewell.config import settings
from vibewell.obs.errors import PermanentFailure, TransientFailure
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics

logger = get_logger(__name__)

SUCCEEDED = "succeeded"

GENERIC_DECLINE_MESSAGE = "The payment could not be processed. Please try another payment method."


@dataclass
class GatewayResult:
    id: str
    status: str
    amount: int
    currency: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class GatewayDecline(PermanentFailure):
    """Non-retryable gateway answer (card decline, invalid request, bad credentials)."""

    error_code = "gateway_decline"

    def __init__(self, detail: str, decline_code: Optional[str] = None, safe_message: Optional[str] = None):
        super().__init__(detail, decline_code=decline_code)
        self.decline_code = decline_code
        # Only card errors carry a message written for end users
        self.safe_message = safe_message


class PaymentGateway(abc.ABC):
    @abc.abstractmethod
    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> GatewayResult:
        """Charge ``amount`` (minor units). Must forward ``idempotency_key`` to the provider."""

    @abc.abstractmethod
    def refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        """Refund a completed charge, fully when ``amount`` is None."""


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by Stripe PaymentIntents and Refunds."""

    TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)
    PERMANENT_ERRORS = (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError)

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.api_version = api_version or settings.STRIPE_API_VERSION

    def _request_options(self, idempotency_key: Optional[str]) -> Dict[str, Any]:
        options = {"api_key": self.api_key, "stripe_version": self.api_version}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def _call(self, operation: str, func, **params):
        start_time = time.time()
        try:
            return func(**params)
        except self.PERMANENT_ERRORS as e:
            # error.decline_code holds the issuer reason; code is the generic card_declined
            decline_code = getattr(getattr(e, "error", None), "decline_code", None) or getattr(e, "code", None)
            safe_message = e.user_message if isinstance(e, stripe.CardError) else None
            logger.warning(
                f"Stripe {operation} declined: {decline_code}",
                extra={'error_type': type(e).__name__},
            )
            raise GatewayDecline(str(e), decline_code=decline_code, safe_message=safe_message) from e
        except self.TRANSIENT_ERRORS as e:
            logger.warning(
                f"Stripe {operation} transient failure: {e}",
                extra={'error_type': type(e).__name__},
            )
            raise TransientFailure(f"Payment provider unavailable during {operation}") from e
        finally:
            metrics.record_gateway_call(operation, (time.time() - start_time) * 1000)

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> GatewayResult:
        if not payment_method:
            # Intents are created and confirmed in one call
            raise GatewayDecline("A payment method is required to confirm the payment", decline_code="payment_method_required")

        params = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata,
            "payment_method": payment_method,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }

        intent = self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            **params,
            **self._request_options(idempotency_key),
        )
        return GatewayResult(
            id=intent["id"],
            status=intent["status"],
            amount=intent["amount"],
            currency=intent["currency"],
            raw=dict(intent),
        )

    def refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        params = {"payment_intent": payment_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"reason": reason}

        refund = self._call(
            "refund",
            stripe.Refund.create,
            **params,
            **self._request_options(idempotency_key),
        )
        return GatewayResult(
            id=refund["id"],
            status=refund["status"],
            amount=refund["amount"],
            currency=refund["currency"],
            raw=dict(refund),
        )
