"""Maps provider event types to reconciliation handlers."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Tuple, Union

from .models import (
    EventKind,
    NormalizedEvent,
    ProviderName,
    ReconciliationOutcome,
    WebhookProcessingResult,
)

if TYPE_CHECKING:  # pragma: no cover
    from .engine import ReconciliationEngine

logger = logging.getLogger(__name__)


EVENT_KIND_TABLE: Dict[Tuple[ProviderName, str], EventKind] = {
    (ProviderName.PAYPAL, "CHECKOUT.ORDER.APPROVED"): EventKind.PAYMENT_COMPLETED,
    (ProviderName.PAYPAL, "PAYMENT.SALE.COMPLETED"): EventKind.PAYMENT_COMPLETED,
    (ProviderName.PAYPAL, "PAYMENT.CAPTURE.COMPLETED"): EventKind.PAYMENT_COMPLETED,
    (ProviderName.PAYPAL, "PAYMENT.SALE.DENIED"): EventKind.PAYMENT_FAILED,
    (ProviderName.PAYPAL, "PAYMENT.SALE.REFUNDED"): EventKind.PAYMENT_FAILED,
    (ProviderName.PAYPAL, "PAYMENT.CAPTURE.DENIED"): EventKind.PAYMENT_FAILED,
    (ProviderName.PAYPAL, "BILLING.SUBSCRIPTION.CANCELLED"): EventKind.SUBSCRIPTION_CANCELLED,
    (ProviderName.PAYPAL, "BILLING.SUBSCRIPTION.SUSPENDED"): EventKind.SUBSCRIPTION_SUSPENDED,
    (ProviderName.STRIPE, "checkout.session.completed"): EventKind.PAYMENT_COMPLETED,
    (ProviderName.STRIPE, "invoice.paid"): EventKind.PAYMENT_COMPLETED,
    (ProviderName.STRIPE, "invoice.payment_failed"): EventKind.PAYMENT_FAILED,
    (ProviderName.STRIPE, "customer.subscription.deleted"): EventKind.SUBSCRIPTION_CANCELLED,
    (ProviderName.STRIPE, "customer.subscription.updated"): EventKind.SUBSCRIPTION_UPDATED,
}


def classify_event(provider: Union[ProviderName, str], event_type: str) -> EventKind:
    """Return the handler category for a provider event type."""

    try:
        provider_name = ProviderName(provider)
    except ValueError:
        return EventKind.UNRECOGNIZED
    return EVENT_KIND_TABLE.get((provider_name, event_type), EventKind.UNRECOGNIZED)


class EventRouter:
    """Selects the engine handler for a normalized event."""

    def classify(self, provider: Union[ProviderName, str], event_type: str) -> EventKind:
        return classify_event(provider, event_type)

    def dispatch(self, event: NormalizedEvent, engine: "ReconciliationEngine") -> WebhookProcessingResult:
        if event.kind == EventKind.PAYMENT_COMPLETED:
            return engine.handle_payment_completed(event)
        if event.kind == EventKind.PAYMENT_FAILED:
            return engine.handle_payment_failed(event)
        if event.kind == EventKind.SUBSCRIPTION_CANCELLED:
            return engine.handle_subscription_cancelled(event)
        if event.kind == EventKind.SUBSCRIPTION_SUSPENDED:
            return engine.handle_subscription_suspended(event)
        if event.kind == EventKind.SUBSCRIPTION_UPDATED:
            return engine.handle_subscription_updated(event)

        logger.debug("Ignoring %s event %s", event.provider.value, event.event_type)
        return WebhookProcessingResult(
            success=True,
            processed=False,
            reason=ReconciliationOutcome.IGNORED,
            message=f"Event type {event.event_type} not processed (ignored)",
        )


__all__ = ["EVENT_KIND_TABLE", "EventRouter", "classify_event"]
