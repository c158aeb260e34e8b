"""Tests for the webhook processor entry point."""
from __future__ import annotations

import pytest

from cloud_api.app.billing import (
    InMemoryEntityStore,
    InvoiceStatus,
    ReconciliationEngine,
    ReconciliationOutcome,
    SubscriptionStatus,
    UnsupportedProviderError,
    WebhookDeliveryStatus,
    WebhookProcessor,
)

from conftest import NOW, FakeNotificationSink, Seeder, SequentialKeyGenerator, paypal_event, stripe_event


def _paypal_capture(invoice_id: str = "inv-1") -> dict:
    return paypal_event(
        "PAYMENT.CAPTURE.COMPLETED",
        {"id": "CAP-1", "custom_id": invoice_id, "amount": {"value": "49.00", "currency_code": "EUR"}},
    )


def _stripe_checkout(invoice_id: str = "inv-1") -> dict:
    return stripe_event(
        "checkout.session.completed",
        {"id": "cs_1", "metadata": {"invoiceId": invoice_id}, "amount_total": 4900, "currency": "eur"},
    )


def test_paypal_capture_is_reconciled_and_audited(processor_components):
    store, notifier, processor, seed = processor_components
    seed.subscription()
    seed.invoice()

    result = processor.process("paypal", _paypal_capture())

    assert result.success is True
    assert result.reason == ReconciliationOutcome.PROCESSED
    assert store.get_invoice("inv-1").status == InvoiceStatus.PAID
    assert len(notifier.payments_completed) == 1
    delivery = store.deliveries[-1]
    assert delivery.status == WebhookDeliveryStatus.PROCESSED
    assert delivery.provider_event_id == "WH-1"
    assert delivery.event_type == "PAYMENT.CAPTURE.COMPLETED"


def test_duplicate_delivery_is_acknowledged_without_side_effects(processor_components):
    store, notifier, processor, seed = processor_components
    seed.subscription()
    seed.invoice()

    processor.process("paypal", _paypal_capture())
    after_first = store.snapshot()
    replay = processor.process("paypal", _paypal_capture())

    assert replay.success is True
    assert replay.reason == ReconciliationOutcome.ALREADY_PROCESSED
    assert store.snapshot() == after_first
    assert len(store.deliveries) == 2
    assert len(notifier.payments_completed) == 1


def _reconcile_with(provider: str, raw_event: dict):
    store = InMemoryEntityStore()
    seed = Seeder(store)
    seed.subscription()
    seed.invoice()
    seed.license(license_id="trial-1")
    engine = ReconciliationEngine(
        store=store,
        notifier=FakeNotificationSink(),
        key_generator=SequentialKeyGenerator(),
        clock=lambda: NOW,
    )
    result = WebhookProcessor(engine).process(provider, raw_event)
    return store, result


def _projection(store: InMemoryEntityStore) -> dict:
    return {
        "invoices": {key: (inv.status, inv.paid_at) for key, inv in store.invoices.items()},
        "subscriptions": {key: sub.status for key, sub in store.subscriptions.items()},
        "licenses": sorted(
            (lic.plan, lic.status, lic.max_devices, lic.key, lic.valid_until) for lic in store.licenses.values()
        ),
        "payments": [(p.amount_cents, p.currency, p.invoice_id, p.status) for p in store.payments],
        "license_events": [(e.event_type, e.metadata.get("invoice_id")) for e in store.license_events],
    }


def test_paypal_and_stripe_payments_reach_the_same_state():
    paypal_store, paypal_result = _reconcile_with("paypal", _paypal_capture())
    stripe_store, stripe_result = _reconcile_with("stripe", _stripe_checkout())

    assert paypal_result.reason == stripe_result.reason == ReconciliationOutcome.PROCESSED
    assert _projection(paypal_store) == _projection(stripe_store)
    assert stripe_store.get_subscription("sub-1").status == SubscriptionStatus.ACTIVE


def test_unknown_event_type_is_ignored(processor_components):
    store, _, processor, seed = processor_components
    seed.subscription()
    seed.invoice()
    before = store.snapshot()

    result = processor.process("stripe", stripe_event("charge.refunded", {"id": "ch_1"}))

    assert result.success is True
    assert result.processed is False
    assert result.reason == ReconciliationOutcome.IGNORED
    assert store.snapshot() == before
    assert store.deliveries[-1].status == WebhookDeliveryStatus.IGNORED


def test_unrecognized_payload_becomes_failure_result(processor_components):
    store, _, processor, seed = processor_components
    seed.subscription()
    seed.invoice()
    before = store.snapshot()

    result = processor.process("paypal", paypal_event("PAYMENT.CAPTURE.COMPLETED", {"id": "CAP-1"}))

    assert result.success is False
    assert result.reason == ReconciliationOutcome.UNRECOGNIZED_PAYLOAD
    assert "resource.custom_id" in result.message
    assert store.snapshot() == before
    delivery = store.deliveries[-1]
    assert delivery.status == WebhookDeliveryStatus.FAILED
    assert delivery.event_type == "PAYMENT.CAPTURE.COMPLETED"
    assert "resource.custom_id" in delivery.error_message


def test_out_of_range_timestamp_becomes_failure_result(processor_components):
    store, _, processor, seed = processor_components
    seed.subscription(provider_subscription_id="sub_1")
    before = store.snapshot()

    result = processor.process(
        "stripe",
        stripe_event(
            "customer.subscription.updated",
            {"id": "sub_1", "status": "active", "current_period_end": 10**20},
        ),
    )

    assert result.success is False
    assert result.reason == ReconciliationOutcome.UNRECOGNIZED_PAYLOAD
    assert store.snapshot() == before
    delivery = store.deliveries[-1]
    assert delivery.status == WebhookDeliveryStatus.FAILED
    assert "data.object.current_period_end" in delivery.error_message


def test_missing_invoice_is_reported_not_raised(processor_components):
    store, _, processor, _ = processor_components

    result = processor.process("stripe", _stripe_checkout("inv-missing"))

    assert result.success is False
    assert result.reason == ReconciliationOutcome.CORRELATION_NOT_FOUND
    assert store.deliveries[-1].status == WebhookDeliveryStatus.FAILED


class BrokenStore(InMemoryEntityStore):
    def mark_invoice_paid(self, invoice_id, *, paid_at, provider_ref):
        raise RuntimeError("database unavailable")


def test_store_errors_propagate_after_recording_delivery():
    store = BrokenStore()
    seed = Seeder(store)
    seed.subscription()
    seed.invoice()
    processor = WebhookProcessor(ReconciliationEngine(store=store, notifier=FakeNotificationSink(), clock=lambda: NOW))

    with pytest.raises(RuntimeError):
        processor.process("paypal", _paypal_capture())

    assert store.get_invoice("inv-1").status == InvoiceStatus.OPEN
    assert store.deliveries[-1].status == WebhookDeliveryStatus.FAILED
    assert "database unavailable" in store.deliveries[-1].error_message


def test_unsupported_provider_raises(processor_components):
    _, _, processor, _ = processor_components

    with pytest.raises(UnsupportedProviderError):
        processor.process("adyen", {"type": "invoice.paid"})
