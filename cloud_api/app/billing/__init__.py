"""Billing reconciliation package turning provider webhooks into entity transitions."""

from .config import ReconciliationConfig, load_reconciliation_config
from .engine import EntityStore, LicenseKeyGenerator, NotificationSink, ReconciliationEngine
from .exceptions import ReconciliationError, UnrecognizedPayloadError, UnsupportedProviderError
from .memory import InMemoryEntityStore
from .models import (
    EventKind,
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
    ProviderEnv,
    ProviderName,
    ReconciliationOutcome,
    Subscription,
    SubscriptionCancelledNotice,
    SubscriptionStatus,
    SubscriptionSuspendedNotice,
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookProcessingResult,
)
from .normalizer import ProviderNormalizer
from .processor import WebhookProcessor
from .router import EventRouter

__all__ = [
    "EntityStore",
    "EventKind",
    "EventRouter",
    "InMemoryEntityStore",
    "Invoice",
    "InvoiceStatus",
    "License",
    "LicenseEvent",
    "LicenseEventType",
    "LicenseKeyGenerator",
    "LicenseStatus",
    "NormalizedEvent",
    "NotificationSink",
    "Payment",
    "PaymentCompletedNotice",
    "PaymentFailedNotice",
    "PaymentStatus",
    "ProviderEnv",
    "ProviderName",
    "ProviderNormalizer",
    "ReconciliationConfig",
    "ReconciliationEngine",
    "ReconciliationError",
    "ReconciliationOutcome",
    "Subscription",
    "SubscriptionCancelledNotice",
    "SubscriptionStatus",
    "SubscriptionSuspendedNotice",
    "UnrecognizedPayloadError",
    "UnsupportedProviderError",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
    "WebhookProcessingResult",
    "WebhookProcessor",
    "load_reconciliation_config",
]
