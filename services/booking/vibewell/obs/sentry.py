"""
Sentry error tracking integration.
"""
import re

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from vibewell.config import settings
from vibewell.obs.logging import get_logger

logger = get_logger(__name__)


def setup_sentry():
    """
    Initialize Sentry SDK for error tracking and performance monitoring.

    Booking conflicts, rate limiting and payment declines are expected
    outcomes and are filtered out in before_send_event.
    """
    if not settings.SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured, skipping Sentry initialization")
        return

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(
                    transaction_style="endpoint",
                    failed_request_status_codes={500, 501, 502, 503, 504},
                ),
                SqlalchemyIntegration(),
                RedisIntegration(),
                CeleryIntegration(),
            ],
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            before_send=before_send_event,
            release=f"vibewell-booking@{settings.ENVIRONMENT}",
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )

        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {str(e)}")


def before_send_event(event, hint):
    """Drop expected business outcomes and redact PII from exception messages."""
    from vibewell.obs.errors import BookingError

    exc_info = hint.get("exc_info") if hint else None
    if exc_info and isinstance(exc_info[1], BookingError) and exc_info[1].status_code < 500:
        return None

    if "exception" in event:
        for exception in event["exception"].get("values", []):
            if exception.get("value"):
                exception["value"] = redact_pii(exception["value"])

    return event


def redact_pii(text: str) -> str:
    """Replace emails and payment-provider keys in error messages."""
    text = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[EMAIL_REDACTED]', text)
    text = re.sub(r'\b(sk|pk|rk)_(live|test)_[A-Za-z0-9]+', '[KEY_REDACTED]', text)
    return text
