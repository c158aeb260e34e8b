"""Top-level entry point for inbound payment-provider webhooks."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union
from uuid import uuid4

from .engine import ReconciliationEngine
from .exceptions import UnrecognizedPayloadError
from .models import (
    NormalizedEvent,
    ProviderName,
    ReconciliationOutcome,
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookProcessingResult,
)
from .normalizer import ProviderNormalizer
from .router import EventRouter

logger = logging.getLogger(__name__)


def _delivery_status(result: WebhookProcessingResult) -> WebhookDeliveryStatus:
    if not result.success:
        return WebhookDeliveryStatus.FAILED
    if result.reason == ReconciliationOutcome.IGNORED:
        return WebhookDeliveryStatus.IGNORED
    return WebhookDeliveryStatus.PROCESSED


def _raw_event_type(provider: ProviderName, raw_event: Any) -> str:
    if not isinstance(raw_event, Mapping):
        return "unknown"
    key = "event_type" if provider == ProviderName.PAYPAL else "type"
    value = raw_event.get(key)
    return value if isinstance(value, str) and value else "unknown"


class WebhookProcessor:
    """Normalizes, routes and reconciles a single webhook delivery.

    Business conditions always come back as a :class:`WebhookProcessingResult`.
    Store failures propagate once the failed delivery has been recorded.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        normalizer: Optional[ProviderNormalizer] = None,
        router: Optional[EventRouter] = None,
    ) -> None:
        self.engine = engine
        self.normalizer = normalizer or ProviderNormalizer()
        self.router = router or EventRouter()

    def process(self, provider: Union[ProviderName, str], raw_event: Mapping[str, Any]) -> WebhookProcessingResult:
        try:
            event = self.normalizer.normalize(provider, raw_event)
        except UnrecognizedPayloadError as exc:
            provider_name = ProviderName(provider)
            logger.warning("Rejected %s webhook payload: %s", provider_name.value, exc)
            result = WebhookProcessingResult(
                success=False,
                processed=False,
                reason=ReconciliationOutcome.UNRECOGNIZED_PAYLOAD,
                message=str(exc),
            )
            self._record(
                provider_name,
                _raw_event_type(provider_name, raw_event),
                None,
                raw_event,
                WebhookDeliveryStatus.FAILED,
                error_message=str(exc),
            )
            return result

        try:
            result = self.router.dispatch(event, self.engine)
        except Exception as exc:
            logger.exception(
                "Reconciliation failed for %s event %s (%s)",
                event.provider.value,
                event.provider_event_id,
                event.event_type,
            )
            self._record_failure(event, exc)
            raise

        self._record(
            event.provider,
            event.event_type,
            event.provider_event_id,
            event.raw,
            _delivery_status(result),
            error_message=None if result.success else result.message,
        )
        return result

    def _record_failure(self, event: NormalizedEvent, exc: Exception) -> None:
        try:
            self._record(
                event.provider,
                event.event_type,
                event.provider_event_id,
                event.raw,
                WebhookDeliveryStatus.FAILED,
                error_message=f"{type(exc).__name__}: {exc}",
            )
        except Exception:
            logger.exception("Could not record failed delivery for event %s", event.provider_event_id)

    def _record(
        self,
        provider: ProviderName,
        event_type: str,
        provider_event_id: Optional[str],
        payload: Any,
        status: WebhookDeliveryStatus,
        *,
        error_message: Optional[str],
    ) -> None:
        self.engine.store.record_webhook_delivery(
            WebhookDelivery(
                delivery_id=str(uuid4()),
                provider=provider,
                event_type=event_type,
                provider_event_id=provider_event_id,
                status=status,
                payload=dict(payload) if isinstance(payload, Mapping) else {},
                error_message=error_message,
            )
        )


__all__ = ["WebhookProcessor"]
