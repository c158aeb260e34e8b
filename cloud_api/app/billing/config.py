"""Reconciliation configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import math
import os

from ..licensing import DEFAULT_KEY_PREFIX

NOTIFICATION_BACKENDS = ("log", "database")


@dataclass(frozen=True)
class DatabaseConfig:
    """psycopg2 connection parameters."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int

    def connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class ReconciliationConfig:
    """Configuration for the webhook reconciliation engine."""

    license_key_prefix: str
    fallback_period_months: int
    plan_device_limits: Dict[str, int] = field(default_factory=dict)
    notifications_backend: str = "log"
    database: Optional[DatabaseConfig] = None


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


def _parse_device_limits(raw_value: Optional[str]) -> Dict[str, int]:
    """Parse ``plan=limit,plan=limit`` into a mapping."""

    limits: Dict[str, int] = {}
    if not raw_value:
        return limits
    for item in raw_value.split(","):
        item = item.strip()
        if not item:
            continue
        plan_id, sep, limit = item.partition("=")
        plan_id = plan_id.strip()
        if not sep or not plan_id:
            raise ValueError(f"Expected plan=limit entry, got {item!r}")
        value = _to_int(limit.strip(), default=0)
        if value < 1:
            raise ValueError(f"Device limit for plan {plan_id!r} must be >= 1")
        limits[plan_id] = value
    return limits


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "cloud_api"),
        user=env_mapping.get("DB_USER", "cloud_api"),
        password=env_mapping.get("DB_PASSWORD", "cloud_api"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT", "5")),
    )


def load_reconciliation_config(env: Optional[Mapping[str, str]] = None) -> ReconciliationConfig:
    """Load :class:`ReconciliationConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    prefix = (env_mapping.get("LICENSE_KEY_PREFIX") or DEFAULT_KEY_PREFIX).strip().upper()
    fallback_period_months = _to_int(env_mapping.get("LICENSE_FALLBACK_PERIOD_MONTHS"), default=1)
    if fallback_period_months < 1:
        raise ValueError("LICENSE_FALLBACK_PERIOD_MONTHS must be >= 1")

    backend = (env_mapping.get("BILLING_NOTIFICATIONS_BACKEND") or "log").strip().lower()
    if backend not in NOTIFICATION_BACKENDS:
        raise ValueError(
            f"BILLING_NOTIFICATIONS_BACKEND must be one of {', '.join(NOTIFICATION_BACKENDS)}, got {backend!r}"
        )

    return ReconciliationConfig(
        license_key_prefix=prefix,
        fallback_period_months=fallback_period_months,
        plan_device_limits=_parse_device_limits(env_mapping.get("LICENSE_PLAN_DEVICE_LIMITS")),
        notifications_backend=backend,
        database=load_database_config(env_mapping),
    )


__all__ = [
    "DatabaseConfig",
    "ReconciliationConfig",
    "load_database_config",
    "load_reconciliation_config",
]
