"""Shared fakes and fixtures for the reconciliation tests."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from cloud_api.app.billing import (
    InMemoryEntityStore,
    Invoice,
    License,
    NotificationSink,
    PaymentCompletedNotice,
    PaymentFailedNotice,
    ReconciliationEngine,
    Subscription,
    SubscriptionCancelledNotice,
    SubscriptionStatus,
    SubscriptionSuspendedNotice,
    WebhookProcessor,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.payments_completed: list[PaymentCompletedNotice] = []
        self.payments_failed: list[PaymentFailedNotice] = []
        self.cancelled: list[SubscriptionCancelledNotice] = []
        self.suspended: list[SubscriptionSuspendedNotice] = []

    def notify_payment_completed(self, notice: PaymentCompletedNotice) -> None:
        self.payments_completed.append(notice)

    def notify_payment_failed(self, notice: PaymentFailedNotice) -> None:
        self.payments_failed.append(notice)

    def notify_subscription_cancelled(self, notice: SubscriptionCancelledNotice) -> None:
        self.cancelled.append(notice)

    def notify_subscription_suspended(self, notice: SubscriptionSuspendedNotice) -> None:
        self.suspended.append(notice)


class SequentialKeyGenerator:
    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.prefixes: list[str] = []

    def __call__(self, prefix: str) -> str:
        self.prefixes.append(prefix)
        return f"{prefix}-TEST-{next(self._counter):04d}"


class Seeder:
    """Creates linked customer fixtures inside an in-memory store."""

    def __init__(self, store: InMemoryEntityStore) -> None:
        self.store = store

    def subscription(
        self,
        *,
        subscription_id: str = "sub-1",
        customer_id: str = "cust-1",
        plan: str = "starter",
        status: SubscriptionStatus = SubscriptionStatus.PENDING,
        provider_subscription_id: Optional[str] = "I-PAYPALSUB",
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
    ) -> Subscription:
        return self.store.add_subscription(
            Subscription(
                subscription_id=subscription_id,
                org_id="org-1",
                customer_id=customer_id,
                plan=plan,
                status=status,
                provider_subscription_id=provider_subscription_id,
                current_period_start=NOW,
                current_period_end=current_period_end,
                cancel_at_period_end=cancel_at_period_end,
            )
        )

    def invoice(
        self,
        *,
        invoice_id: str = "inv-1",
        customer_id: str = "cust-1",
        subscription_id: Optional[str] = "sub-1",
        amount_cents: int = 4900,
        provider_invoice_id: Optional[str] = None,
        **extra,
    ) -> Invoice:
        return self.store.add_invoice(
            Invoice(
                invoice_id=invoice_id,
                org_id="org-1",
                customer_id=customer_id,
                subscription_id=subscription_id,
                number=f"RE-{invoice_id}",
                amount_cents=amount_cents,
                currency="EUR",
                provider_invoice_id=provider_invoice_id,
                **extra,
            )
        )

    def license(
        self,
        *,
        license_id: str,
        customer_id: str = "cust-1",
        plan: str = "trial",
        **extra,
    ) -> License:
        return self.store.add_license(
            License(
                license_id=license_id,
                org_id="org-1",
                customer_id=customer_id,
                key=f"CSTY-{license_id.upper()}",
                plan=plan,
                valid_from=NOW - timedelta(days=2),
                valid_until=NOW + timedelta(days=1),
                **extra,
            )
        )


@pytest.fixture
def reconciliation_components():
    store = InMemoryEntityStore()
    notifier = FakeNotificationSink()
    keys = SequentialKeyGenerator()
    engine = ReconciliationEngine(
        store=store,
        notifier=notifier,
        key_generator=keys,
        clock=lambda: NOW,
    )
    return store, notifier, engine, Seeder(store)


@pytest.fixture
def processor_components(reconciliation_components):
    store, notifier, engine, seeder = reconciliation_components
    return store, notifier, WebhookProcessor(engine), seeder


def paypal_event(event_type: str, resource: dict, event_id: str = "WH-1") -> dict:
    return {"id": event_id, "event_type": event_type, "resource_type": "capture", "resource": resource}


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


@pytest.fixture
def make_paypal_event() -> Callable[..., dict]:
    return paypal_event


@pytest.fixture
def make_stripe_event() -> Callable[..., dict]:
    return stripe_event
