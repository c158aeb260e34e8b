"""Reconciliation of provider webhooks against invoices, subscriptions and licenses."""
from __future__ import annotations

import calendar
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..licensing import DEFAULT_KEY_PREFIX, LicensePlanCatalog, generate_license_key
from .models import (
    Invoice,
    InvoiceStatus,
    License,
    LicenseEvent,
    LicenseEventType,
    LicenseStatus,
    NormalizedEvent,
    Payment,
    PaymentCompletedNotice,
    PaymentFailedNotice,
    PaymentStatus,
    ProviderName,
    ReconciliationOutcome,
    Subscription,
    SubscriptionCancelledNotice,
    SubscriptionStatus,
    SubscriptionSuspendedNotice,
    WebhookDelivery,
    WebhookProcessingResult,
)

logger = logging.getLogger(__name__)


LicenseKeyGenerator = Callable[[str], str]


class EntityStore(Protocol):
    """Persistence operations consumed by the reconciliation engine.

    Every mutating operation is conditional: it returns ``None`` when the row
    is missing or no longer in a state the transition accepts.
    """

    def transaction(self) -> AbstractContextManager["EntityStore"]:
        ...

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    def get_invoice_by_provider_invoice_id(self, provider_invoice_id: str) -> Optional[Invoice]:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_provider_ref(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    def get_active_non_trial_license(self, customer_id: str) -> Optional[License]:
        ...

    def list_active_trial_licenses(self, customer_id: str) -> Sequence[License]:
        ...

    def mark_invoice_paid(
        self,
        invoice_id: str,
        *,
        paid_at: datetime,
        provider_ref: Optional[str],
    ) -> Optional[Invoice]:
        ...

    def update_subscription_status(
        self,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        from_statuses: Sequence[SubscriptionStatus],
        canceled_at: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        ...

    def update_subscription_period(
        self,
        subscription_id: str,
        *,
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
    ) -> Optional[Subscription]:
        ...

    def insert_payment(self, payment: Payment) -> Payment:
        ...

    def insert_license(self, license: License) -> Optional[License]:
        ...

    def revoke_license(self, license_id: str) -> Optional[License]:
        ...

    def insert_license_event(self, event: LicenseEvent) -> LicenseEvent:
        ...

    def record_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        ...


class NotificationSink(Protocol):
    """Fire-and-forget delivery of reconciliation outcomes."""

    def notify_payment_completed(self, notice: PaymentCompletedNotice) -> None:
        ...

    def notify_payment_failed(self, notice: PaymentFailedNotice) -> None:
        ...

    def notify_subscription_cancelled(self, notice: SubscriptionCancelledNotice) -> None:
        ...

    def notify_subscription_suspended(self, notice: SubscriptionSuspendedNotice) -> None:
        ...


_PROVIDER_PAYMENT_STATUS: Dict[ProviderName, str] = {
    ProviderName.PAYPAL: "COMPLETED",
    ProviderName.STRIPE: "paid",
}

_STRIPE_SUBSCRIPTION_STATUS: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
}


_ACTIVATABLE = (SubscriptionStatus.PENDING, SubscriptionStatus.PAST_DUE)
_SUSPENDABLE = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)
_CANCELLABLE = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by calendar months, clamping to the last day of month."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class _PaymentCascade:
    invoice: Invoice
    payment: Payment
    updated_subscription_id: Optional[str] = None
    created_license: Optional[License] = None
    revoked_license_ids: List[str] = field(default_factory=list)


@dataclass
class ReconciliationEngine:
    """Applies normalized webhook events to the entity store."""

    store: EntityStore
    notifier: NotificationSink
    plan_catalog: LicensePlanCatalog = field(default_factory=LicensePlanCatalog)
    key_generator: LicenseKeyGenerator = generate_license_key
    license_key_prefix: str = DEFAULT_KEY_PREFIX
    fallback_period_months: int = 1
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self.clock()

    # Payment completed -------------------------------------------------

    def handle_payment_completed(self, event: NormalizedEvent) -> WebhookProcessingResult:
        invoice = self._resolve_invoice(self.store, event.correlation_id)
        if invoice is None:
            return self._correlation_not_found(event)
        if invoice.is_paid:
            return self._invoice_already_paid(invoice)
        if invoice.status != InvoiceStatus.OPEN:
            logger.warning(
                "Refusing to settle invoice %s in status %s from %s event %s",
                invoice.invoice_id,
                invoice.status.value,
                event.provider.value,
                event.provider_event_id,
            )
            return WebhookProcessingResult(
                success=False,
                reason=ReconciliationOutcome.INVOICE_NOT_OPEN,
                message=f"Invoice {invoice.invoice_id} is {invoice.status.value} and cannot be paid",
                updated_invoice_id=invoice.invoice_id,
            )

        now = self._now()
        with self.store.transaction() as tx:
            paid = tx.mark_invoice_paid(
                invoice.invoice_id,
                paid_at=now,
                provider_ref=event.provider_ref or invoice.provider_ref,
            )
            cascade = self._apply_payment_cascade(tx, paid, event, now) if paid else None

        if cascade is None:
            # A concurrent delivery settled the invoice between our read and the write.
            return self._invoice_already_paid(invoice)

        license_id = cascade.created_license.license_id if cascade.created_license else None
        logger.info(
            "Invoice %s paid via %s payment=%s license=%s revoked=%s",
            cascade.invoice.invoice_id,
            event.provider.value,
            cascade.payment.payment_id,
            license_id,
            cascade.revoked_license_ids,
        )
        self._notify(
            self.notifier.notify_payment_completed,
            PaymentCompletedNotice(
                org_id=cascade.invoice.org_id,
                customer_id=cascade.invoice.customer_id,
                invoice_id=cascade.invoice.invoice_id,
                invoice_number=cascade.invoice.number,
                provider=event.provider,
                provider_ref=event.provider_ref,
                amount_cents=cascade.payment.amount_cents,
                currency=cascade.payment.currency,
                license_id=license_id,
            ),
        )
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.PROCESSED,
            message=f"Payment completed for invoice {cascade.invoice.invoice_id}",
            updated_invoice_id=cascade.invoice.invoice_id,
            updated_subscription_id=cascade.updated_subscription_id,
            created_payment_id=cascade.payment.payment_id,
            created_license_id=license_id,
            revoked_license_ids=tuple(cascade.revoked_license_ids),
        )

    def _apply_payment_cascade(
        self,
        tx: EntityStore,
        invoice: Invoice,
        event: NormalizedEvent,
        now: datetime,
    ) -> _PaymentCascade:
        subscription: Optional[Subscription] = None
        updated_subscription_id: Optional[str] = None
        if invoice.subscription_id:
            subscription = tx.get_subscription(invoice.subscription_id)
            if subscription is not None and subscription.status in _ACTIVATABLE:
                activated = tx.update_subscription_status(
                    subscription.subscription_id,
                    status=SubscriptionStatus.ACTIVE,
                    from_statuses=_ACTIVATABLE,
                )
                if activated is not None:
                    subscription = activated
                    updated_subscription_id = activated.subscription_id

        payment = tx.insert_payment(
            Payment(
                payment_id=str(uuid4()),
                org_id=invoice.org_id,
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.invoice_id,
                provider=event.provider,
                provider_env=invoice.provider_env,
                provider_payment_id=event.provider_ref,
                provider_status=_PROVIDER_PAYMENT_STATUS.get(event.provider),
                amount_cents=event.amount_cents if event.amount_cents is not None else invoice.amount_cents,
                currency=event.currency or invoice.currency,
                status=PaymentStatus.SUCCEEDED,
                created_at=now,
            )
        )

        cascade = _PaymentCascade(
            invoice=invoice,
            payment=payment,
            updated_subscription_id=updated_subscription_id,
        )

        paid_license = tx.get_active_non_trial_license(invoice.customer_id)
        issues_license = subscription is not None and not self.plan_catalog.is_trial(subscription.plan)
        if paid_license is None and issues_license:
            cascade.created_license = self._issue_license(tx, invoice, subscription, event, now)
            paid_license = cascade.created_license or tx.get_active_non_trial_license(invoice.customer_id)

        # Runs whether or not this call issued the paid license.
        cascade.revoked_license_ids = self._revoke_trials(tx, invoice, paid_license, event)
        return cascade

    def _issue_license(
        self,
        tx: EntityStore,
        invoice: Invoice,
        subscription: Subscription,
        event: NormalizedEvent,
        now: datetime,
    ) -> Optional[License]:
        valid_until = subscription.current_period_end
        if valid_until is None or valid_until <= now:
            valid_until = add_months(now, self.fallback_period_months)

        created = tx.insert_license(
            License(
                license_id=str(uuid4()),
                org_id=invoice.org_id,
                customer_id=invoice.customer_id,
                subscription_id=subscription.subscription_id,
                key=self.key_generator(self.license_key_prefix),
                plan=subscription.plan,
                max_devices=self.plan_catalog.max_devices_for(subscription.plan),
                status=LicenseStatus.ACTIVE,
                valid_from=now,
                valid_until=valid_until,
                created_at=now,
            )
        )
        if created is None:
            logger.info("Customer %s already holds an active license; skipped issuance", invoice.customer_id)
            return None

        tx.insert_license_event(
            LicenseEvent(
                event_id=str(uuid4()),
                org_id=invoice.org_id,
                license_id=created.license_id,
                event_type=LicenseEventType.CREATED,
                metadata=self._event_metadata(
                    event,
                    invoice_id=invoice.invoice_id,
                    subscription_id=subscription.subscription_id,
                ),
                created_at=now,
            )
        )
        return created

    def _revoke_trials(
        self,
        tx: EntityStore,
        invoice: Invoice,
        paid_license: Optional[License],
        event: NormalizedEvent,
    ) -> List[str]:
        revoked_ids: List[str] = []
        for trial in tx.list_active_trial_licenses(invoice.customer_id):
            revoked = tx.revoke_license(trial.license_id)
            if revoked is None:
                continue
            revoked_ids.append(revoked.license_id)
            tx.insert_license_event(
                LicenseEvent(
                    event_id=str(uuid4()),
                    org_id=revoked.org_id,
                    license_id=revoked.license_id,
                    event_type=LicenseEventType.REVOKED,
                    metadata=self._event_metadata(
                        event,
                        invoice_id=invoice.invoice_id,
                        replaced_by=paid_license.license_id if paid_license else None,
                    ),
                )
            )
        return revoked_ids

    # Payment failed ----------------------------------------------------

    def handle_payment_failed(self, event: NormalizedEvent) -> WebhookProcessingResult:
        invoice = self._resolve_invoice(self.store, event.correlation_id)
        if invoice is None:
            return self._correlation_not_found(event)

        # Advisory only; the invoice stays open.
        logger.info(
            "Payment failure reported by %s for invoice %s (%s)",
            event.provider.value,
            invoice.invoice_id,
            event.event_type,
        )
        self._notify(
            self.notifier.notify_payment_failed,
            PaymentFailedNotice(
                org_id=invoice.org_id,
                customer_id=invoice.customer_id,
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.number,
                provider=event.provider,
                reason=event.event_type,
            ),
        )
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.ADVISORY,
            message=f"Payment failed for invoice {invoice.invoice_id} (logged)",
            updated_invoice_id=invoice.invoice_id,
        )

    # Subscription lifecycle ---------------------------------------------

    def handle_subscription_cancelled(self, event: NormalizedEvent) -> WebhookProcessingResult:
        subscription = self._resolve_subscription(event)
        if subscription is None:
            return self._subscription_not_found(event)
        if subscription.is_cancelled:
            return self._subscription_unchanged(subscription, "already cancelled")

        with self.store.transaction() as tx:
            cancelled = tx.update_subscription_status(
                subscription.subscription_id,
                status=SubscriptionStatus.CANCELLED,
                from_statuses=_CANCELLABLE,
                canceled_at=self._now(),
            )
        if cancelled is None:
            return self._subscription_unchanged(subscription, "already cancelled")

        logger.info("Subscription %s cancelled via %s", cancelled.subscription_id, event.provider.value)
        self._notify_cancelled(cancelled, event)
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.PROCESSED,
            message=f"Subscription {cancelled.subscription_id} cancelled",
            updated_subscription_id=cancelled.subscription_id,
        )

    def handle_subscription_suspended(self, event: NormalizedEvent) -> WebhookProcessingResult:
        subscription = self._resolve_subscription(event)
        if subscription is None:
            return self._subscription_not_found(event)
        if subscription.status not in _SUSPENDABLE:
            return self._subscription_unchanged(subscription, f"is {subscription.status.value}")

        with self.store.transaction() as tx:
            suspended = tx.update_subscription_status(
                subscription.subscription_id,
                status=SubscriptionStatus.PAST_DUE,
                from_statuses=_SUSPENDABLE,
            )
        if suspended is None:
            return self._subscription_unchanged(subscription, "changed concurrently")

        logger.info("Subscription %s suspended via %s", suspended.subscription_id, event.provider.value)
        self._notify(
            self.notifier.notify_subscription_suspended,
            SubscriptionSuspendedNotice(
                org_id=suspended.org_id,
                customer_id=suspended.customer_id,
                subscription_id=suspended.subscription_id,
                provider=event.provider,
                reason=event.event_type,
            ),
        )
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.PROCESSED,
            message=f"Subscription {suspended.subscription_id} suspended",
            updated_subscription_id=suspended.subscription_id,
        )

    def handle_subscription_updated(self, event: NormalizedEvent) -> WebhookProcessingResult:
        subscription = self._resolve_subscription(event)
        if subscription is None:
            return self._subscription_not_found(event)
        if subscription.is_cancelled:
            return self._subscription_unchanged(subscription, "already cancelled")

        target = _STRIPE_SUBSCRIPTION_STATUS.get(event.subscription_status or "")
        changed_status: Optional[Subscription] = None
        updated: Optional[Subscription] = None
        with self.store.transaction() as tx:
            # Only a settled payment may move a subscription back to active.
            if target == SubscriptionStatus.PAST_DUE and subscription.status in _SUSPENDABLE:
                changed_status = tx.update_subscription_status(
                    subscription.subscription_id,
                    status=SubscriptionStatus.PAST_DUE,
                    from_statuses=_SUSPENDABLE,
                )
            elif target == SubscriptionStatus.CANCELLED:
                changed_status = tx.update_subscription_status(
                    subscription.subscription_id,
                    status=SubscriptionStatus.CANCELLED,
                    from_statuses=_CANCELLABLE,
                    canceled_at=self._now(),
                )
            if event.current_period_start is not None or event.current_period_end is not None:
                updated = tx.update_subscription_period(
                    subscription.subscription_id,
                    current_period_start=event.current_period_start,
                    current_period_end=event.current_period_end,
                )

        final = updated or changed_status
        if final is None:
            return self._subscription_unchanged(subscription, "no reconcilable change")

        if changed_status is not None and changed_status.is_cancelled:
            self._notify_cancelled(changed_status, event)
        logger.info(
            "Subscription %s updated via %s status=%s",
            final.subscription_id,
            event.provider.value,
            final.status.value,
        )
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.PROCESSED,
            message=f"Subscription {final.subscription_id} updated",
            updated_subscription_id=final.subscription_id,
        )

    # Helpers -----------------------------------------------------------

    def _resolve_invoice(self, store: EntityStore, correlation_id: Optional[str]) -> Optional[Invoice]:
        if not correlation_id:
            return None
        invoice = store.get_invoice(correlation_id)
        if invoice is None:
            invoice = store.get_invoice_by_provider_invoice_id(correlation_id)
        return invoice

    def _resolve_subscription(self, event: NormalizedEvent) -> Optional[Subscription]:
        if not event.correlation_id:
            return None
        return self.store.get_subscription_by_provider_ref(event.correlation_id)

    def _notify_cancelled(self, subscription: Subscription, event: NormalizedEvent) -> None:
        self._notify(
            self.notifier.notify_subscription_cancelled,
            SubscriptionCancelledNotice(
                org_id=subscription.org_id,
                customer_id=subscription.customer_id,
                subscription_id=subscription.subscription_id,
                provider=event.provider,
                provider_subscription_id=event.correlation_id,
            ),
        )

    def _notify(self, deliver: Callable[[object], None], notice: object) -> None:
        try:
            deliver(notice)
        except Exception:
            logger.exception("Notification delivery failed for %s", type(notice).__name__)

    @staticmethod
    def _event_metadata(event: NormalizedEvent, **extra: Optional[str]) -> Dict[str, str]:
        metadata = {
            "source": f"{event.provider.value}_webhook",
            "event_type": event.event_type,
        }
        if event.provider_event_id:
            metadata["provider_event_id"] = event.provider_event_id
        if event.provider_ref:
            metadata["provider_ref"] = event.provider_ref
        metadata.update({key: value for key, value in extra.items() if value})
        return metadata

    @staticmethod
    def _invoice_already_paid(invoice: Invoice) -> WebhookProcessingResult:
        logger.debug("Invoice %s already paid; replay ignored", invoice.invoice_id)
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.ALREADY_PROCESSED,
            message=f"Invoice {invoice.invoice_id} already paid",
            updated_invoice_id=invoice.invoice_id,
        )

    @staticmethod
    def _subscription_unchanged(subscription: Subscription, detail: str) -> WebhookProcessingResult:
        logger.debug("Subscription %s left unchanged: %s", subscription.subscription_id, detail)
        return WebhookProcessingResult(
            success=True,
            reason=ReconciliationOutcome.ALREADY_PROCESSED,
            message=f"Subscription {subscription.subscription_id} {detail}",
            updated_subscription_id=subscription.subscription_id,
        )

    @staticmethod
    def _correlation_not_found(event: NormalizedEvent) -> WebhookProcessingResult:
        logger.warning(
            "No invoice matches %s correlation id %s (event %s)",
            event.provider.value,
            event.correlation_id,
            event.provider_event_id,
        )
        return WebhookProcessingResult(
            success=False,
            reason=ReconciliationOutcome.CORRELATION_NOT_FOUND,
            message=f"Invoice {event.correlation_id} not found",
        )

    @staticmethod
    def _subscription_not_found(event: NormalizedEvent) -> WebhookProcessingResult:
        logger.warning(
            "No subscription matches %s provider id %s (event %s)",
            event.provider.value,
            event.correlation_id,
            event.provider_event_id,
        )
        return WebhookProcessingResult(
            success=False,
            reason=ReconciliationOutcome.SUBSCRIPTION_NOT_FOUND,
            message=f"Subscription with provider ID {event.correlation_id} not found",
        )


__all__ = [
    "EntityStore",
    "LicenseKeyGenerator",
    "NotificationSink",
    "ReconciliationEngine",
    "add_months",
]
