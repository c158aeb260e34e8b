"""Application wiring for webhook reconciliation."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

import psycopg2
import psycopg2.extras
from dotenv import load_dotenv
from psycopg2.extensions import connection as PgConnection

from ... import app_context
from ..billing import (
    NotificationSink,
    PaymentCompletedNotice,
    PaymentFailedNotice,
    ReconciliationConfig,
    ReconciliationEngine,
    SubscriptionCancelledNotice,
    SubscriptionSuspendedNotice,
    WebhookProcessor,
    load_reconciliation_config,
)
from ..billing.repository import PostgresEntityStore, managed_connection
from ..licensing import LicensePlanCatalog


logger = logging.getLogger("billing")


class LoggingNotificationSink(NotificationSink):
    """Sink that records reconciliation outcomes to the application logger."""

    def notify_payment_completed(self, notice: PaymentCompletedNotice) -> None:
        logger.info(
            "Payment completed org=%s invoice=%s provider=%s amount=%s %s license=%s",
            notice.org_id,
            notice.invoice_number or notice.invoice_id,
            notice.provider.value,
            notice.amount_cents,
            notice.currency,
            notice.license_id,
        )

    def notify_payment_failed(self, notice: PaymentFailedNotice) -> None:
        logger.warning(
            "Payment failed org=%s invoice=%s provider=%s reason=%s",
            notice.org_id,
            notice.invoice_number or notice.invoice_id,
            notice.provider.value,
            notice.reason,
        )

    def notify_subscription_cancelled(self, notice: SubscriptionCancelledNotice) -> None:
        logger.info(
            "Subscription cancelled org=%s subscription=%s provider=%s",
            notice.org_id,
            notice.subscription_id,
            notice.provider.value,
        )

    def notify_subscription_suspended(self, notice: SubscriptionSuspendedNotice) -> None:
        logger.warning(
            "Subscription suspended org=%s subscription=%s reason=%s",
            notice.org_id,
            notice.subscription_id,
            notice.reason,
        )


class PostgresNotificationSink(NotificationSink):
    """Sink that writes admin notifications into the ``notifications`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def _create(
        self,
        *,
        org_id: str,
        type_: str,
        title: str,
        body: Optional[str],
        customer_id: Optional[str],
        license_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO notifications (org_id, type, title, body, customer_id, license_id, data)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        org_id,
                        type_,
                        title,
                        body,
                        customer_id,
                        license_id,
                        psycopg2.extras.Json(data) if data is not None else None,
                    ),
                )

    def notify_payment_completed(self, notice: PaymentCompletedNotice) -> None:
        self._create(
            org_id=notice.org_id,
            type_=f"{notice.provider.value}_payment_completed",
            title=f"{notice.provider.value.title()} payment completed",
            body=f"Payment for invoice {notice.invoice_number or notice.invoice_id} was processed.",
            customer_id=notice.customer_id,
            license_id=notice.license_id,
            data={
                "invoiceId": notice.invoice_id,
                "invoiceNumber": notice.invoice_number,
                "providerRef": notice.provider_ref,
                "amountCents": notice.amount_cents,
                "currency": notice.currency,
            },
        )

    def notify_payment_failed(self, notice: PaymentFailedNotice) -> None:
        self._create(
            org_id=notice.org_id,
            type_=f"{notice.provider.value}_payment_failed",
            title="Payment failed",
            body=f"Payment for invoice {notice.invoice_number or notice.invoice_id} failed.",
            customer_id=notice.customer_id,
            data={
                "invoiceId": notice.invoice_id,
                "invoiceNumber": notice.invoice_number,
                "reason": notice.reason,
            },
        )

    def notify_subscription_cancelled(self, notice: SubscriptionCancelledNotice) -> None:
        self._create(
            org_id=notice.org_id,
            type_=f"{notice.provider.value}_subscription_cancelled",
            title="Subscription cancelled",
            body="A customer cancelled their subscription.",
            customer_id=notice.customer_id,
            data={
                "subscriptionId": notice.subscription_id,
                "provider": notice.provider.value,
                "providerSubscriptionId": notice.provider_subscription_id,
            },
        )

    def notify_subscription_suspended(self, notice: SubscriptionSuspendedNotice) -> None:
        body = "Subscription was suspended"
        if notice.reason:
            body = f"{body}: {notice.reason}"
        self._create(
            org_id=notice.org_id,
            type_="subscription_suspended",
            title="Subscription suspended",
            body=body,
            customer_id=notice.customer_id,
            data={"subscriptionId": notice.subscription_id, "reason": notice.reason},
        )


def build_notification_sink(config: ReconciliationConfig) -> NotificationSink:
    if config.notifications_backend == "database":
        return PostgresNotificationSink()
    return LoggingNotificationSink()


def build_engine(config: ReconciliationConfig, store: Any, notifier: NotificationSink) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        notifier=notifier,
        plan_catalog=LicensePlanCatalog.with_device_limits(config.plan_device_limits),
        license_key_prefix=config.license_key_prefix,
        fallback_period_months=config.fallback_period_months,
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    load_dotenv()
    config = load_reconciliation_config()
    if config.database is not None:
        db_kwargs = config.database.connect_kwargs()
        app_context.configure(get_conn=lambda: psycopg2.connect(**db_kwargs))
    engine = build_engine(config, PostgresEntityStore(), build_notification_sink(config))
    logger.info(
        "Webhook processor ready notifications=%s key_prefix=%s",
        config.notifications_backend,
        config.license_key_prefix,
    )
    return WebhookProcessor(engine)


__all__ = [
    "LoggingNotificationSink",
    "PostgresNotificationSink",
    "build_engine",
    "build_notification_sink",
    "get_webhook_processor",
]
