"""PostgreSQL persistence for reconciliation entities."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..licensing import TRIAL_PLAN
from .models import (
    Invoice,
    InvoiceStatus,
    License,
    LicenseEvent,
    LicenseEventType,
    LicenseStatus,
    Payment,
    PaymentStatus,
    ProviderEnv,
    ProviderName,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_invoice(row: dict) -> Invoice:
    return Invoice(
        invoice_id=row["invoice_id"],
        org_id=row["org_id"],
        customer_id=row["customer_id"],
        subscription_id=row.get("subscription_id"),
        number=row.get("number") or "",
        amount_cents=int(row["amount_cents"]),
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        provider_ref=row.get("provider_ref"),
        provider_invoice_id=row.get("provider_invoice_id"),
        provider_env=ProviderEnv(row.get("provider_env") or ProviderEnv.TEST.value),
        paid_at=row.get("paid_at"),
        due_at=row.get("due_at"),
        created_at=row["created_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        org_id=row["org_id"],
        customer_id=row["customer_id"],
        plan=row["plan"],
        status=SubscriptionStatus(row["status"]),
        provider_subscription_id=row.get("provider_subscription_id"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        created_at=row["created_at"],
    )


def _row_to_license(row: dict) -> License:
    return License(
        license_id=row["license_id"],
        org_id=row["org_id"],
        customer_id=row["customer_id"],
        subscription_id=row.get("subscription_id"),
        key=row["license_key"],
        plan=row["plan"],
        max_devices=int(row["max_devices"]),
        status=LicenseStatus(row["status"]),
        valid_from=row["valid_from"],
        valid_until=row.get("valid_until"),
        created_at=row["created_at"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        org_id=row["org_id"],
        customer_id=row["customer_id"],
        subscription_id=row.get("subscription_id"),
        invoice_id=row.get("invoice_id"),
        provider=ProviderName(row["provider"]),
        provider_env=ProviderEnv(row["provider_env"]),
        provider_payment_id=row.get("provider_payment_id"),
        provider_status=row.get("provider_status"),
        amount_cents=int(row["amount_cents"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        created_at=row["created_at"],
    )


def _row_to_license_event(row: dict) -> LicenseEvent:
    return LicenseEvent(
        event_id=row["event_id"],
        org_id=row["org_id"],
        license_id=row["license_id"],
        event_type=LicenseEventType(row["event_type"]),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_webhook_delivery(row: dict) -> WebhookDelivery:
    return WebhookDelivery(
        delivery_id=row["delivery_id"],
        provider=ProviderName(row["provider"]),
        event_type=row["event_type"],
        provider_event_id=row.get("provider_event_id"),
        status=row["status"],
        payload=row.get("payload") or {},
        error_message=row.get("error_message"),
        received_at=row["received_at"],
    )


class PostgresEntityStore:
    """Entity store backed by PostgreSQL through psycopg2.

    Outside :meth:`transaction` every call runs on its own connection and
    commits immediately. Inside it, calls share one connection that commits
    when the block exits cleanly and rolls back otherwise.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresEntityStore"]:
        with managed_connection(self._conn) as (connection, managed):
            yield PostgresEntityStore(conn=connection) if managed else self

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    # Reads ---------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM invoices
                WHERE invoice_id = %s
                LIMIT 1
                """,
                (invoice_id,),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def get_invoice_by_provider_invoice_id(self, provider_invoice_id: str) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM invoices
                WHERE provider_invoice_id = %s
                LIMIT 1
                """,
                (provider_invoice_id,),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_provider_ref(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE provider_subscription_id = %s
                LIMIT 1
                """,
                (provider_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_active_non_trial_license(self, customer_id: str) -> Optional[License]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM licenses
                WHERE customer_id = %s AND status = %s AND plan <> %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (customer_id, LicenseStatus.ACTIVE.value, TRIAL_PLAN),
            )
            row = cursor.fetchone()
            return _row_to_license(row) if row else None

    def list_active_trial_licenses(self, customer_id: str) -> List[License]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM licenses
                WHERE customer_id = %s AND status = %s AND plan = %s
                ORDER BY created_at
                FOR UPDATE
                """,
                (customer_id, LicenseStatus.ACTIVE.value, TRIAL_PLAN),
            )
            rows = cursor.fetchall() or []
            return [_row_to_license(row) for row in rows]

    # Conditional transitions -----------------------------------------------

    def mark_invoice_paid(
        self,
        invoice_id: str,
        *,
        paid_at: datetime,
        provider_ref: Optional[str],
    ) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE invoices
                SET status = %s,
                    paid_at = %s,
                    provider_ref = COALESCE(%s, provider_ref),
                    due_at = NULL,
                    updated_at = NOW()
                WHERE invoice_id = %s AND status = %s
                RETURNING *
                """,
                (
                    InvoiceStatus.PAID.value,
                    paid_at,
                    provider_ref,
                    invoice_id,
                    InvoiceStatus.OPEN.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def update_subscription_status(
        self,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        from_statuses: Sequence[SubscriptionStatus],
        canceled_at: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET status = %s,
                    cancel_at_period_end = CASE WHEN %s = 'cancelled' THEN FALSE ELSE cancel_at_period_end END,
                    canceled_at = COALESCE(%s, canceled_at),
                    updated_at = NOW()
                WHERE subscription_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (
                    status.value,
                    status.value,
                    canceled_at,
                    subscription_id,
                    [item.value for item in from_statuses],
                ),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update_subscription_period(
        self,
        subscription_id: str,
        *,
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET current_period_start = COALESCE(%s, current_period_start),
                    current_period_end = COALESCE(%s, current_period_end),
                    updated_at = NOW()
                WHERE subscription_id = %s AND status <> %s
                RETURNING *
                """,
                (
                    current_period_start,
                    current_period_end,
                    subscription_id,
                    SubscriptionStatus.CANCELLED.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def revoke_license(self, license_id: str) -> Optional[License]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE licenses
                SET status = %s, updated_at = NOW()
                WHERE license_id = %s AND status = %s
                RETURNING *
                """,
                (LicenseStatus.REVOKED.value, license_id, LicenseStatus.ACTIVE.value),
            )
            row = cursor.fetchone()
            return _row_to_license(row) if row else None

    # Inserts ---------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payments (
                    payment_id,
                    org_id,
                    customer_id,
                    subscription_id,
                    invoice_id,
                    provider,
                    provider_env,
                    provider_payment_id,
                    provider_status,
                    amount_cents,
                    currency,
                    status,
                    created_at
                )
                VALUES (%(payment_id)s, %(org_id)s, %(customer_id)s, %(subscription_id)s,
                        %(invoice_id)s, %(provider)s, %(provider_env)s, %(provider_payment_id)s,
                        %(provider_status)s, %(amount_cents)s, %(currency)s, %(status)s,
                        %(created_at)s)
                RETURNING *
                """,
                {
                    "payment_id": payment.payment_id,
                    "org_id": payment.org_id,
                    "customer_id": payment.customer_id,
                    "subscription_id": payment.subscription_id,
                    "invoice_id": payment.invoice_id,
                    "provider": payment.provider.value,
                    "provider_env": payment.provider_env.value,
                    "provider_payment_id": payment.provider_payment_id,
                    "provider_status": payment.provider_status,
                    "amount_cents": payment.amount_cents,
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "created_at": payment.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(row)

    def insert_license(self, license: License) -> Optional[License]:
        """Insert ``license`` unless the customer already holds an active paid one."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO licenses (
                    license_id,
                    org_id,
                    customer_id,
                    subscription_id,
                    license_key,
                    plan,
                    max_devices,
                    status,
                    valid_from,
                    valid_until,
                    created_at
                )
                VALUES (%(license_id)s, %(org_id)s, %(customer_id)s, %(subscription_id)s,
                        %(license_key)s, %(plan)s, %(max_devices)s, %(status)s,
                        %(valid_from)s, %(valid_until)s, %(created_at)s)
                ON CONFLICT (customer_id) WHERE status = 'active' AND plan <> 'trial'
                DO NOTHING
                RETURNING *
                """,
                {
                    "license_id": license.license_id,
                    "org_id": license.org_id,
                    "customer_id": license.customer_id,
                    "subscription_id": license.subscription_id,
                    "license_key": license.key,
                    "plan": license.plan,
                    "max_devices": license.max_devices,
                    "status": license.status.value,
                    "valid_from": license.valid_from,
                    "valid_until": license.valid_until,
                    "created_at": license.created_at,
                },
            )
            row = cursor.fetchone()
            return _row_to_license(row) if row else None

    def insert_license_event(self, event: LicenseEvent) -> LicenseEvent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO license_events (event_id, org_id, license_id, event_type, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    event.event_id,
                    event.org_id,
                    event.license_id,
                    event.event_type.value,
                    psycopg2.extras.Json(event.metadata),
                    event.created_at,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist license event")
            return _row_to_license_event(row)

    def record_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO webhook_deliveries (
                    delivery_id,
                    provider,
                    event_type,
                    provider_event_id,
                    status,
                    payload,
                    error_message,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    delivery.delivery_id,
                    delivery.provider.value,
                    delivery.event_type,
                    delivery.provider_event_id,
                    delivery.status.value,
                    psycopg2.extras.Json(delivery.payload),
                    delivery.error_message,
                    delivery.received_at,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist webhook delivery")
            return _row_to_webhook_delivery(row)


__all__ = ["PostgresEntityStore", "managed_connection"]
