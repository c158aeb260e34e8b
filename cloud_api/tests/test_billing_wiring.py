import logging

import psycopg2.extras
import pytest

from cloud_api import app_context
from cloud_api.app.billing import (
    PaymentCompletedNotice,
    ProviderName,
    SubscriptionSuspendedNotice,
)
from cloud_api.app.billing.config import load_reconciliation_config
from cloud_api.app.billing.repository import PostgresEntityStore
from cloud_api.app.services import billing as billing_services


class FakeCursor:
    def __init__(self):
        self.execute_calls = []

    def execute(self, query, params=None):
        self.execute_calls.append((" ".join(query.split()), params))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self, *args, **kwargs):
        return self._cursor


def _completed_notice() -> PaymentCompletedNotice:
    return PaymentCompletedNotice(
        org_id="org-1",
        customer_id="cust-1",
        invoice_id="inv-1",
        invoice_number="RE-2024-001",
        provider=ProviderName.STRIPE,
        provider_ref="cs_1",
        amount_cents=4900,
        currency="EUR",
        license_id="lic-1",
    )


def test_logging_sink_writes_to_billing_logger(caplog):
    sink = billing_services.LoggingNotificationSink()

    with caplog.at_level(logging.INFO, logger="billing"):
        sink.notify_payment_completed(_completed_notice())

    assert "RE-2024-001" in caplog.text
    assert caplog.records[0].name == "billing"


def test_database_sink_inserts_notification_row():
    cursor = FakeCursor()
    sink = billing_services.PostgresNotificationSink(conn=FakeConnection(cursor))

    sink.notify_payment_completed(_completed_notice())

    query, params = cursor.execute_calls[0]
    assert query.startswith("INSERT INTO notifications")
    assert params[:3] == ("org-1", "stripe_payment_completed", "Stripe payment completed")
    assert params[4:6] == ("cust-1", "lic-1")
    assert isinstance(params[6], psycopg2.extras.Json)


def test_database_sink_suspension_body_includes_reason():
    cursor = FakeCursor()
    sink = billing_services.PostgresNotificationSink(conn=FakeConnection(cursor))

    sink.notify_subscription_suspended(
        SubscriptionSuspendedNotice(
            org_id="org-1",
            subscription_id="sub-1",
            provider=ProviderName.PAYPAL,
            reason="BILLING.SUBSCRIPTION.SUSPENDED",
        )
    )

    params = cursor.execute_calls[0][1]
    assert params[1] == "subscription_suspended"
    assert params[3] == "Subscription was suspended: BILLING.SUBSCRIPTION.SUSPENDED"


def test_build_engine_applies_configuration():
    config = load_reconciliation_config(
        {"LICENSE_KEY_PREFIX": "POS", "LICENSE_PLAN_DEVICE_LIMITS": "pro=7", "LICENSE_FALLBACK_PERIOD_MONTHS": "3"}
    )

    engine = billing_services.build_engine(config, store=object(), notifier=billing_services.LoggingNotificationSink())

    assert engine.license_key_prefix == "POS"
    assert engine.fallback_period_months == 3
    assert engine.plan_catalog.max_devices_for("pro") == 7


@pytest.fixture
def fresh_processor_cache():
    billing_services.get_webhook_processor.cache_clear()
    yield
    billing_services.get_webhook_processor.cache_clear()
    app_context.reset()


@pytest.mark.parametrize(
    "backend, expected",
    [
        ("log", billing_services.LoggingNotificationSink),
        ("database", billing_services.PostgresNotificationSink),
    ],
)
def test_get_webhook_processor_wires_postgres_store(monkeypatch, fresh_processor_cache, backend, expected):
    monkeypatch.setenv("BILLING_NOTIFICATIONS_BACKEND", backend)

    processor = billing_services.get_webhook_processor()

    assert isinstance(processor.engine.store, PostgresEntityStore)
    assert isinstance(processor.engine.notifier, expected)
    assert billing_services.get_webhook_processor() is processor
