"""Domain models for webhook-driven billing reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..licensing import TRIAL_PLAN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderName(str, Enum):
    """Payment providers that deliver webhooks."""

    PAYPAL = "paypal"
    STRIPE = "stripe"


class ProviderEnv(str, Enum):
    TEST = "test"
    LIVE = "live"


class InvoiceStatus(str, Enum):
    """Status of an invoice created at checkout time."""

    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LicenseEventType(str, Enum):
    """Audit categories appended to the license event log."""

    CREATED = "created"
    REVOKED = "revoked"


class EventKind(str, Enum):
    """Provider-agnostic categories of webhook events."""

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    UNRECOGNIZED = "unrecognized"

    @property
    def correlates_invoice(self) -> bool:
        return self in {EventKind.PAYMENT_COMPLETED, EventKind.PAYMENT_FAILED}

    @property
    def correlates_subscription(self) -> bool:
        return self in {
            EventKind.SUBSCRIPTION_CANCELLED,
            EventKind.SUBSCRIPTION_SUSPENDED,
            EventKind.SUBSCRIPTION_UPDATED,
        }


class ReconciliationOutcome(str, Enum):
    """Reason codes carried by every processing result."""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    ADVISORY = "advisory"
    CORRELATION_NOT_FOUND = "correlation_not_found"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    UNRECOGNIZED_PAYLOAD = "unrecognized_payload"
    INVOICE_NOT_OPEN = "invoice_not_open"


class WebhookDeliveryStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class Invoice(BaseModel):
    """Invoice issued at checkout and settled by provider webhooks."""

    invoice_id: str
    org_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    number: str = ""
    amount_cents: int = Field(ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    status: InvoiceStatus = InvoiceStatus.OPEN
    provider_ref: Optional[str] = None
    provider_invoice_id: Optional[str] = None
    provider_env: ProviderEnv = ProviderEnv.TEST
    paid_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID


class Subscription(BaseModel):
    """Subscription state owned by the reconciliation engine."""

    subscription_id: str
    org_id: str
    customer_id: str
    plan: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    provider_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED


class License(BaseModel):
    """POS license bound to a customer."""

    license_id: str
    org_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    key: str
    plan: str
    max_devices: int = Field(default=1, ge=1)
    status: LicenseStatus = LicenseStatus.ACTIVE
    valid_from: datetime = Field(default_factory=_utcnow)
    valid_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_trial(self) -> bool:
        return self.plan == TRIAL_PLAN

    @property
    def is_active(self) -> bool:
        return self.status == LicenseStatus.ACTIVE


class Payment(BaseModel):
    """Settled payment recorded once per reconciled payment event."""

    payment_id: str
    org_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    provider: ProviderName
    provider_env: ProviderEnv = ProviderEnv.TEST
    provider_payment_id: Optional[str] = None
    provider_status: Optional[str] = None
    amount_cents: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LicenseEvent(BaseModel):
    """Append-only audit entry for a license lifecycle change."""

    event_id: str
    org_id: str
    license_id: str
    event_type: LicenseEventType
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NormalizedEvent(BaseModel):
    """Provider-agnostic view of a raw webhook envelope."""

    provider: ProviderName
    event_type: str
    kind: EventKind
    provider_event_id: Optional[str] = None
    correlation_id: Optional[str] = None
    provider_ref: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None
    subscription_status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class WebhookProcessingResult(BaseModel):
    """Result handed back to the transport layer; never raised."""

    success: bool
    processed: bool = True
    reason: ReconciliationOutcome
    message: str
    updated_invoice_id: Optional[str] = None
    updated_subscription_id: Optional[str] = None
    created_payment_id: Optional[str] = None
    created_license_id: Optional[str] = None
    revoked_license_ids: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class PaymentCompletedNotice(BaseModel):
    org_id: str
    customer_id: Optional[str] = None
    invoice_id: str
    invoice_number: str
    provider: ProviderName
    provider_ref: Optional[str] = None
    amount_cents: int
    currency: str
    license_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentFailedNotice(BaseModel):
    org_id: str
    customer_id: Optional[str] = None
    invoice_id: str
    invoice_number: str
    provider: ProviderName
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionCancelledNotice(BaseModel):
    org_id: str
    customer_id: Optional[str] = None
    subscription_id: str
    provider: ProviderName
    provider_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionSuspendedNotice(BaseModel):
    org_id: str
    customer_id: Optional[str] = None
    subscription_id: str
    provider: ProviderName
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class WebhookDelivery(BaseModel):
    """Audit row for a single webhook delivery attempt."""

    delivery_id: str
    provider: ProviderName
    event_type: str
    provider_event_id: Optional[str] = None
    status: WebhookDeliveryStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
