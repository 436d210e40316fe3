"""
Centralized configuration management for the VibeWell booking core.
Loads and validates all environment variables.
"""
import os
from typing import Dict, Tuple


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# action -> (limit "count/period", block duration)
DEFAULT_RATE_LIMITS: Dict[str, Tuple[str, str]] = {
    "login": ("5/15minute", "1hour"),
    "signup": ("3/hour", "1hour"),
    "mfa": ("5/5minute", "15minute"),
    "password_reset": ("3/hour", "1hour"),
    "api": ("60/minute", "1minute"),
    "reservations": ("20/minute", "5minute"),
    "payments": ("10/minute", "15minute"),
    "admin": ("30/minute", "5minute"),
}


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        # Database
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./vibewell_dev.db")

        # Redis Configuration
        self.REDIS_URL = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
        self.REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "2.0"))
        self.REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", "2.0"))

        # Rate Limiting Configuration
        self.ENABLE_RATE_LIMITING = _env_bool("ENABLE_RATE_LIMITING", "true")
        # Fail open = allow requests when Redis is unreachable
        self.RATE_LIMIT_FAIL_OPEN = _env_bool("RATE_LIMIT_FAIL_OPEN", "true")
        self.RATE_LIMIT_EVENTS_MAX = int(os.getenv("RATE_LIMIT_EVENTS_MAX", "1000"))
        self.RATE_LIMIT_EVENTS_RETENTION_SECONDS = int(os.getenv("RATE_LIMIT_EVENTS_RETENTION_SECONDS", "86400"))
        self.RATE_LIMITS: Dict[str, Tuple[str, str]] = {}
        for action, (limit, block) in DEFAULT_RATE_LIMITS.items():
            env_name = f"RATE_LIMIT_{action.upper()}"
            self.RATE_LIMITS[action] = (
                os.getenv(env_name, limit),
                os.getenv(f"{env_name}_BLOCK", block),
            )

        # Reservations
        self.RESERVATION_HOLD_MINUTES = int(os.getenv("RESERVATION_HOLD_MINUTES", "10"))
        self.RESERVATION_SWEEP_INTERVAL_SECONDS = int(os.getenv("RESERVATION_SWEEP_INTERVAL_SECONDS", "60"))
        self.ENABLE_RESERVATION_SWEEPER = _env_bool("ENABLE_RESERVATION_SWEEPER", "true")

        # Payments / Stripe
        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2023-10-16")
        self.GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
        self.PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS", "3"))
        self.PAYMENT_RETRY_BASE_DELAY = float(os.getenv("PAYMENT_RETRY_BASE_DELAY", "0.5"))
        self.REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

        # Idempotency Configuration
        self.IDEMPOTENCY_TTL_DAYS = int(os.getenv("IDEMPOTENCY_TTL_DAYS", "90"))

        # Admin remediation endpoints
        self.ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

        # Sentry Error Tracking
        self.SENTRY_DSN = os.getenv("SENTRY_DSN", "")
        self.SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

        # Environment
        self.ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

        # CORS Configuration
        allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
        self.ALLOWED_ORIGINS = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]

        # Celery Configuration
        self.ENABLE_CELERY = _env_bool("ENABLE_CELERY", "false")

        # Observability Configuration
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.OBS_REDACT_PII = _env_bool("OBS_REDACT_PII", "true")
        self.ENABLE_TRACING = _env_bool("ENABLE_TRACING", "false")
        self.OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
        self.OTEL_SERVICE_NAME_API = os.getenv("OTEL_SERVICE_NAME_API", "vibewell-booking-api")
        self.OTEL_SERVICE_NAME_WORKER = os.getenv("OTEL_SERVICE_NAME_WORKER", "vibewell-booking-worker")

        # Validate required settings
        self._validate_settings()

    def _validate_settings(self):
        """Validate required settings with environment-aware relaxations."""
        is_prod = self.is_production

        if is_prod:
            required_settings = [
                ('STRIPE_SECRET_KEY', self.STRIPE_SECRET_KEY),
                ('ADMIN_API_TOKEN', self.ADMIN_API_TOKEN),
            ]
            for name, value in required_settings:
                if value in ['CHANGE_ME', f'your_{name.lower()}', '']:
                    raise ValueError(f'{name} must be set to a real value, not a placeholder')

        # Redis requirement handling
        if (self.ENABLE_CELERY or self.is_rate_limiting_enabled()) and not self.REDIS_URL:
            if is_prod:
                raise ValueError('REDIS_URL or UPSTASH_REDIS_URL must be set when Celery or rate limiting is enabled')
            # In non-production, auto-disable rate limiting to avoid startup crash
            self.ENABLE_RATE_LIMITING = False

        if self.RESERVATION_HOLD_MINUTES <= 0:
            raise ValueError('RESERVATION_HOLD_MINUTES must be positive')
        if self.PAYMENT_MAX_ATTEMPTS < 1:
            raise ValueError('PAYMENT_MAX_ATTEMPTS must be at least 1')

    def is_rate_limiting_enabled(self) -> bool:
        """Check if rate limiting is enabled."""
        return self.ENABLE_RATE_LIMITING

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"


# Global settings instance
settings = Settings()
