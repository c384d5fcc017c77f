"""Environment configuration for the reconciliation engine."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class ReconciliationConfig:
    """Operational knobs for webhook intake, retries and sweeps."""

    cancel_url: str
    retry_batch_limit: int
    retry_max_attempts: int
    retry_interval_seconds: float
    stale_pending_hours: float
    sweep_interval_seconds: float
    stuck_processing_minutes: int
    scheduler_enabled: bool
    stripe_secret_key: Optional[str]
    provider_timeout_seconds: float
    provider_max_network_retries: int
    default_currency: str


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_reconciliation_config(env: Optional[Mapping[str, str]] = None) -> ReconciliationConfig:
    """Load :class:`ReconciliationConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    cancel_url = env_mapping.get("BILLING_CANCEL_URL") or "http://localhost:5173/billing/cancel"
    retry_batch_limit = max(1, _to_int(env_mapping.get("BILLING_RETRY_BATCH_LIMIT"), default=10))
    retry_max_attempts = max(1, _to_int(env_mapping.get("BILLING_RETRY_MAX_ATTEMPTS"), default=5))
    retry_interval_seconds = max(
        1.0, _to_float(env_mapping.get("BILLING_RETRY_INTERVAL_SECONDS"), default=300.0)
    )
    stale_pending_hours = _to_float(env_mapping.get("BILLING_STALE_PENDING_HOURS"), default=24.0)
    if stale_pending_hours <= 0:
        raise ValueError("BILLING_STALE_PENDING_HOURS must be positive")
    sweep_interval_seconds = max(
        1.0, _to_float(env_mapping.get("BILLING_SWEEP_INTERVAL_SECONDS"), default=3600.0)
    )
    stuck_processing_minutes = max(1, _to_int(env_mapping.get("BILLING_STUCK_PROCESSING_MINUTES"), default=30))
    scheduler_enabled = _to_bool(env_mapping.get("BILLING_SCHEDULER_ENABLED"), default=False)

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    provider_timeout_seconds = max(0.1, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0))
    provider_max_network_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2))
    default_currency = (env_mapping.get("BILLING_DEFAULT_CURRENCY") or "USD").strip().upper() or "USD"

    return ReconciliationConfig(
        cancel_url=cancel_url,
        retry_batch_limit=retry_batch_limit,
        retry_max_attempts=retry_max_attempts,
        retry_interval_seconds=retry_interval_seconds,
        stale_pending_hours=stale_pending_hours,
        sweep_interval_seconds=sweep_interval_seconds,
        stuck_processing_minutes=stuck_processing_minutes,
        scheduler_enabled=scheduler_enabled,
        stripe_secret_key=stripe_secret_key,
        provider_timeout_seconds=provider_timeout_seconds,
        provider_max_network_retries=provider_max_network_retries,
        default_currency=default_currency,
    )


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_database_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Return keyword arguments for :func:`psycopg2.connect`."""

    env_mapping = os.environ if env is None else env
    return dict(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "paysync_db"),
        user=env_mapping.get("DB_USER", "paysync"),
        password=env_mapping.get("DB_PASSWORD", "paysync"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT", "5")),
    )


__all__ = ["ReconciliationConfig", "load_database_config", "load_reconciliation_config"]
