"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import math
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for payment processing and the billing store."""

    provider_name: str
    stripe_secret_key: Optional[str]
    webhook_secret: Optional[str]
    signature_tolerance_seconds: int
    store_backend: str
    app_url: str
    currency: str
    internal_api_token: Optional[str]
    notification_ttl_days: int
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int

    @property
    def db_settings(self) -> Dict[str, Any]:
        """Keyword arguments for ``psycopg2.connect``."""

        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.db_connect_timeout,
        }


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    default_provider = "stripe" if stripe_secret_key else "sandbox"
    provider_name = (env_mapping.get("PAYMENT_PROVIDER") or default_provider).strip().lower() or default_provider
    if provider_name not in {"stripe", "sandbox"}:
        raise ValueError(f"Unsupported PAYMENT_PROVIDER {provider_name!r}")
    if provider_name == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when PAYMENT_PROVIDER=stripe")

    store_backend = (env_mapping.get("BILLING_STORE") or "postgres").strip().lower() or "postgres"
    if store_backend not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported BILLING_STORE {store_backend!r}")

    # NEXT_PUBLIC_APP_URL is shared with the frontend build and takes precedence.
    app_url = env_mapping.get("NEXT_PUBLIC_APP_URL") or env_mapping.get("APP_BASE_URL") or "http://localhost:3000"

    tolerance = _to_int(env_mapping.get("STRIPE_SIGNATURE_TOLERANCE"), default=300)

    return BillingConfig(
        provider_name=provider_name,
        stripe_secret_key=stripe_secret_key,
        webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        signature_tolerance_seconds=max(0, tolerance),
        store_backend=store_backend,
        app_url=app_url.strip(),
        currency=(env_mapping.get("BILLING_CURRENCY") or "brl").strip().upper(),
        internal_api_token=env_mapping.get("INTERNAL_API_TOKEN") or None,
        notification_ttl_days=max(1, _to_int(env_mapping.get("NOTIFICATION_TTL_DAYS"), default=7)),
        db_host=env_mapping.get("DB_HOST", "localhost"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "creators"),
        db_user=env_mapping.get("DB_USER", "postgres"),
        db_password=env_mapping.get("DB_PASSWORD", ""),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT") or "5"),
    )


__all__ = ["BillingConfig", "load_billing_config"]
