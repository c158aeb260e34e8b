import pytest

from cloud_api.app.billing import (
    EventKind,
    EventRouter,
    NormalizedEvent,
    ProviderName,
    ReconciliationOutcome,
    WebhookProcessingResult,
)
from cloud_api.app.billing.router import EVENT_KIND_TABLE


@pytest.mark.parametrize(
    "provider, event_type, expected",
    [
        ("paypal", "CHECKOUT.ORDER.APPROVED", EventKind.PAYMENT_COMPLETED),
        ("paypal", "PAYMENT.SALE.COMPLETED", EventKind.PAYMENT_COMPLETED),
        ("paypal", "PAYMENT.CAPTURE.COMPLETED", EventKind.PAYMENT_COMPLETED),
        ("paypal", "PAYMENT.SALE.DENIED", EventKind.PAYMENT_FAILED),
        ("paypal", "PAYMENT.SALE.REFUNDED", EventKind.PAYMENT_FAILED),
        ("paypal", "PAYMENT.CAPTURE.DENIED", EventKind.PAYMENT_FAILED),
        ("paypal", "BILLING.SUBSCRIPTION.CANCELLED", EventKind.SUBSCRIPTION_CANCELLED),
        ("paypal", "BILLING.SUBSCRIPTION.SUSPENDED", EventKind.SUBSCRIPTION_SUSPENDED),
        ("stripe", "checkout.session.completed", EventKind.PAYMENT_COMPLETED),
        ("stripe", "invoice.paid", EventKind.PAYMENT_COMPLETED),
        ("stripe", "invoice.payment_failed", EventKind.PAYMENT_FAILED),
        ("stripe", "customer.subscription.deleted", EventKind.SUBSCRIPTION_CANCELLED),
        ("stripe", "customer.subscription.updated", EventKind.SUBSCRIPTION_UPDATED),
    ],
)
def test_classify_known_events(provider, event_type, expected):
    assert EventRouter().classify(provider, event_type) == expected


def test_table_covers_exactly_the_known_events():
    assert len(EVENT_KIND_TABLE) == 13


@pytest.mark.parametrize(
    "provider, event_type",
    [
        ("paypal", "payment.capture.completed"),
        ("stripe", "PAYMENT.CAPTURE.COMPLETED"),
        ("stripe", "charge.refunded"),
        ("adyen", "invoice.paid"),
    ],
)
def test_unknown_events_are_unrecognized(provider, event_type):
    assert EventRouter().classify(provider, event_type) == EventKind.UNRECOGNIZED


class RecordingEngine:
    def __init__(self) -> None:
        self.calls = []

    def _record(self, name, event):
        self.calls.append((name, event.event_type))
        return WebhookProcessingResult(success=True, reason=ReconciliationOutcome.PROCESSED, message=name)

    def handle_payment_completed(self, event):
        return self._record("payment_completed", event)

    def handle_payment_failed(self, event):
        return self._record("payment_failed", event)

    def handle_subscription_cancelled(self, event):
        return self._record("subscription_cancelled", event)

    def handle_subscription_suspended(self, event):
        return self._record("subscription_suspended", event)

    def handle_subscription_updated(self, event):
        return self._record("subscription_updated", event)


@pytest.mark.parametrize(
    "kind",
    [
        EventKind.PAYMENT_COMPLETED,
        EventKind.PAYMENT_FAILED,
        EventKind.SUBSCRIPTION_CANCELLED,
        EventKind.SUBSCRIPTION_SUSPENDED,
        EventKind.SUBSCRIPTION_UPDATED,
    ],
)
def test_dispatch_selects_handler_by_kind(kind):
    engine = RecordingEngine()
    event = NormalizedEvent(provider=ProviderName.STRIPE, event_type="x", kind=kind, correlation_id="c")

    result = EventRouter().dispatch(event, engine)

    assert engine.calls == [(kind.value, "x")]
    assert result.message == kind.value


def test_dispatch_ignores_unrecognized_events():
    engine = RecordingEngine()
    event = NormalizedEvent(provider=ProviderName.STRIPE, event_type="charge.refunded", kind=EventKind.UNRECOGNIZED)

    result = EventRouter().dispatch(event, engine)

    assert engine.calls == []
    assert result.success is True
    assert result.processed is False
    assert result.reason == ReconciliationOutcome.IGNORED
    assert result.message == "Event type charge.refunded not processed (ignored)"
