"""In-memory entity store suitable for tests and local development."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .models import (
    Invoice,
    InvoiceStatus,
    License,
    LicenseEvent,
    LicenseStatus,
    Payment,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
)


class InMemoryEntityStore:
    """Dictionary backed :class:`EntityStore`.

    A transaction holds a re-entrant lock for its whole duration and restores
    the pre-transaction state when the block raises, which mirrors the
    serializable behaviour of the PostgreSQL store closely enough for tests.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self.invoices: Dict[str, Invoice] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.licenses: Dict[str, License] = {}
        self.payments: List[Payment] = []
        self.license_events: List[LicenseEvent] = []
        self.deliveries: List[WebhookDelivery] = []

    # Seeding -------------------------------------------------------------

    def add_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            self.invoices[invoice.invoice_id] = invoice
        return invoice

    def add_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def add_license(self, license: License) -> License:
        with self._lock:
            self.licenses[license.license_id] = license
        return license

    def snapshot(self) -> Dict[str, Any]:
        """Comparable copy of every entity, excluding the delivery audit log."""

        with self._lock:
            return {
                "invoices": dict(self.invoices),
                "subscriptions": dict(self.subscriptions),
                "licenses": dict(self.licenses),
                "payments": list(self.payments),
                "license_events": list(self.license_events),
            }

    # EntityStore ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["InMemoryEntityStore"]:
        with self._lock:
            saved = self.snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except Exception:
                if saved is not None:
                    self._restore(saved)
                raise
            finally:
                self._depth -= 1

    def _restore(self, saved: Dict[str, Any]) -> None:
        self.invoices = saved["invoices"]
        self.subscriptions = saved["subscriptions"]
        self.licenses = saved["licenses"]
        self.payments = saved["payments"]
        self.license_events = saved["license_events"]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self.invoices.get(invoice_id)

    def get_invoice_by_provider_invoice_id(self, provider_invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            for invoice in self.invoices.values():
                if invoice.provider_invoice_id == provider_invoice_id:
                    return invoice
        return None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self.subscriptions.get(subscription_id)

    def get_subscription_by_provider_ref(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self.subscriptions.values():
                if subscription.provider_subscription_id == provider_subscription_id:
                    return subscription
        return None

    def get_active_non_trial_license(self, customer_id: str) -> Optional[License]:
        with self._lock:
            for license in self.licenses.values():
                if license.customer_id == customer_id and license.is_active and not license.is_trial:
                    return license
        return None

    def list_active_trial_licenses(self, customer_id: str) -> Sequence[License]:
        with self._lock:
            return [
                license
                for license in self.licenses.values()
                if license.customer_id == customer_id and license.is_active and license.is_trial
            ]

    def mark_invoice_paid(
        self,
        invoice_id: str,
        *,
        paid_at: datetime,
        provider_ref: Optional[str],
    ) -> Optional[Invoice]:
        with self._lock:
            invoice = self.invoices.get(invoice_id)
            if invoice is None or invoice.status != InvoiceStatus.OPEN:
                return None
            updated = invoice.model_copy(
                update={
                    "status": InvoiceStatus.PAID,
                    "paid_at": paid_at,
                    "provider_ref": provider_ref or invoice.provider_ref,
                    "due_at": None,
                }
            )
            self.invoices[invoice_id] = updated
            return updated

    def update_subscription_status(
        self,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        from_statuses: Sequence[SubscriptionStatus],
        canceled_at: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.status not in from_statuses:
                return None
            changes: Dict[str, Any] = {"status": status}
            if status == SubscriptionStatus.CANCELLED:
                changes["cancel_at_period_end"] = False
            if canceled_at is not None:
                changes["canceled_at"] = canceled_at
            updated = subscription.model_copy(update=changes)
            self.subscriptions[subscription_id] = updated
            return updated

    def update_subscription_period(
        self,
        subscription_id: str,
        *,
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.is_cancelled:
                return None
            changes: Dict[str, Any] = {}
            if current_period_start is not None:
                changes["current_period_start"] = current_period_start
            if current_period_end is not None:
                changes["current_period_end"] = current_period_end
            updated = subscription.model_copy(update=changes)
            self.subscriptions[subscription_id] = updated
            return updated

    def insert_payment(self, payment: Payment) -> Payment:
        with self._lock:
            self.payments.append(payment)
        return payment

    def insert_license(self, license: License) -> Optional[License]:
        with self._lock:
            if license.is_active and not license.is_trial:
                if self.get_active_non_trial_license(license.customer_id) is not None:
                    return None
            self.licenses[license.license_id] = license
        return license

    def revoke_license(self, license_id: str) -> Optional[License]:
        with self._lock:
            license = self.licenses.get(license_id)
            if license is None or not license.is_active:
                return None
            revoked = license.model_copy(update={"status": LicenseStatus.REVOKED})
            self.licenses[license_id] = revoked
            return revoked

    def insert_license_event(self, event: LicenseEvent) -> LicenseEvent:
        with self._lock:
            self.license_events.append(event)
        return event

    def record_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._lock:
            self.deliveries.append(delivery)
        return delivery


__all__ = ["InMemoryEntityStore"]
