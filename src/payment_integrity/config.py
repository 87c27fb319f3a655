"""Environment-driven settings."""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./payment_integrity.db"

# Twice the expected time for an initiated payment to receive its callback.
DEFAULT_PENDING_GRACE_MINUTES = 10


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _list_env(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class MpesaSettings:
    environment: str = "sandbox"
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    shortcode: Optional[str] = None
    passkey: Optional[str] = None
    callback_url: Optional[str] = None

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def is_configured(self) -> bool:
        return all([
            self.consumer_key,
            self.consumer_secret,
            self.shortcode,
            self.passkey,
            self.callback_url,
        ])


@dataclass
class IntegritySettings:
    """Runtime settings for the integrity service.

    Use ``IntegritySettings.from_env()`` in processes; construct directly in tests.
    """
    database_url: str = DEFAULT_DATABASE_URL
    enforcement_level: str = "strict"
    reconciliation_hour: int = 23
    reconciliation_minute: int = 0
    reconciliation_timezone: str = "UTC"
    gateway_lookup_timeout_seconds: float = 10.0
    run_budget_seconds: float = 600.0
    max_concurrency: int = 8
    pending_grace_minutes: int = DEFAULT_PENDING_GRACE_MINUTES
    stuck_sweep_interval_minutes: int = 15
    webhook_urls: List[str] = field(default_factory=list)
    webhook_secret: Optional[str] = None
    webhook_retry_attempts: int = 3
    webhook_retry_delay: float = 1.0
    currency: str = "KES"
    gateway: str = "mpesa"
    mpesa: MpesaSettings = field(default_factory=MpesaSettings)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.enforcement_level not in ("strict", "warn", "off"):
            raise ValueError(
                f"INTEGRITY_ENFORCEMENT must be strict, warn or off, got {self.enforcement_level!r}"
            )
        if not 0 <= self.reconciliation_hour <= 23:
            raise ValueError("RECONCILIATION_HOUR must be between 0 and 23")
        if not 0 <= self.reconciliation_minute <= 59:
            raise ValueError("RECONCILIATION_MINUTE must be between 0 and 59")
        if self.gateway_lookup_timeout_seconds <= 0:
            raise ValueError("GATEWAY_LOOKUP_TIMEOUT_SECONDS must be positive")
        if self.gateway_lookup_timeout_seconds >= self.run_budget_seconds:
            raise ValueError(
                "GATEWAY_LOOKUP_TIMEOUT_SECONDS must be shorter than "
                "RECONCILIATION_RUN_BUDGET_SECONDS"
            )
        if self.max_concurrency < 1:
            raise ValueError("RECONCILIATION_MAX_CONCURRENCY must be at least 1")
        if self.pending_grace_minutes < 0:
            raise ValueError("RECONCILIATION_PENDING_GRACE_MINUTES cannot be negative")
        if self.webhook_retry_attempts < 1:
            raise ValueError("WEBHOOK_RETRY_ATTEMPTS must be at least 1")
        if self.gateway not in ("mpesa", "simulator"):
            raise ValueError(f"PAYMENT_GATEWAY must be mpesa or simulator, got {self.gateway!r}")

    @classmethod
    def from_env(cls) -> "IntegritySettings":
        from .database.session import get_database_url

        settings = cls(
            database_url=get_database_url(),
            enforcement_level=os.getenv("INTEGRITY_ENFORCEMENT", "strict").lower(),
            reconciliation_hour=_int_env("RECONCILIATION_HOUR", 23),
            reconciliation_minute=_int_env("RECONCILIATION_MINUTE", 0),
            reconciliation_timezone=os.getenv("RECONCILIATION_TIMEZONE", "UTC"),
            gateway_lookup_timeout_seconds=_float_env("GATEWAY_LOOKUP_TIMEOUT_SECONDS", 10.0),
            run_budget_seconds=_float_env("RECONCILIATION_RUN_BUDGET_SECONDS", 600.0),
            max_concurrency=_int_env("RECONCILIATION_MAX_CONCURRENCY", 8),
            pending_grace_minutes=_int_env(
                "RECONCILIATION_PENDING_GRACE_MINUTES", DEFAULT_PENDING_GRACE_MINUTES
            ),
            stuck_sweep_interval_minutes=_int_env("STUCK_SWEEP_INTERVAL_MINUTES", 15),
            webhook_urls=_list_env("RECONCILIATION_WEBHOOK_URLS"),
            webhook_secret=os.getenv("RECONCILIATION_WEBHOOK_SECRET"),
            webhook_retry_attempts=_int_env("WEBHOOK_RETRY_ATTEMPTS", 3),
            webhook_retry_delay=_float_env("WEBHOOK_RETRY_DELAY", 1.0),
            currency=os.getenv("PAYMENT_CURRENCY", "KES").upper(),
            gateway=os.getenv("PAYMENT_GATEWAY", "mpesa").lower(),
            mpesa=MpesaSettings(
                environment=os.getenv("MPESA_ENVIRONMENT", "sandbox").lower(),
                consumer_key=os.getenv("MPESA_CONSUMER_KEY"),
                consumer_secret=os.getenv("MPESA_CONSUMER_SECRET"),
                shortcode=os.getenv("MPESA_SHORTCODE"),
                passkey=os.getenv("MPESA_PASSKEY"),
                callback_url=os.getenv("MPESA_CALLBACK_URL"),
            ),
        )
        logger.debug(
            f"Loaded settings: enforcement={settings.enforcement_level}, "
            f"schedule={settings.reconciliation_hour:02d}:{settings.reconciliation_minute:02d} "
            f"{settings.reconciliation_timezone}"
        )
        return settings
