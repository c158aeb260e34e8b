"""Translate raw PayPal and Stripe webhooks into :class:`NormalizedEvent`."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Union

from pydantic import ValidationError

from ..schemas.webhooks import PayPalWebhookEnvelope, StripeWebhookEnvelope
from .exceptions import UnrecognizedPayloadError, UnsupportedProviderError
from .models import EventKind, NormalizedEvent, ProviderName
from .router import classify_event

_STEP_PATTERN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


@dataclass(frozen=True)
class FieldPath:
    """Named location inside a nested provider document, e.g. ``a.b[0].c``."""

    name: str
    steps: Tuple[Union[str, int], ...]

    @classmethod
    def parse(cls, name: str) -> "FieldPath":
        steps: list[Union[str, int]] = []
        for key, index in _STEP_PATTERN.findall(name):
            steps.append(int(index) if index else key)
        if not steps:
            raise ValueError(f"Empty field path: {name!r}")
        return cls(name=name, steps=tuple(steps))

    def resolve(self, document: Any) -> Any:
        current = document
        for step in self.steps:
            if isinstance(step, int):
                if not isinstance(current, (list, tuple)) or step >= len(current):
                    return None
                current = current[step]
            else:
                if not isinstance(current, Mapping):
                    return None
                current = current.get(step)
            if current is None:
                return None
        return current


def _paths(*names: str) -> Tuple[FieldPath, ...]:
    return tuple(FieldPath.parse(name) for name in names)


def first_string(document: Any, paths: Sequence[FieldPath]) -> Optional[str]:
    """Return the first non-blank string (or integer id) found along ``paths``."""

    for path in paths:
        value = path.resolve(document)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_present(document: Any, paths: Sequence[FieldPath]) -> Tuple[Optional[FieldPath], Any]:
    for path in paths:
        value = path.resolve(document)
        if value is not None and value != "":
            return path, value
    return None, None


def _require_correlation(
    provider: ProviderName,
    document: Mapping[str, Any],
    paths: Sequence[FieldPath],
    label: str,
) -> str:
    value = first_string(document, paths)
    if value is None:
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"{label} not found in {provider.value} event data",
            tried_paths=tuple(path.name for path in paths),
        )
    return value


def _decimal_to_minor_units(provider: ProviderName, path: FieldPath, value: Any) -> int:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"Invalid decimal amount {value!r} at {path.name}",
        ) from exc
    if not amount.is_finite() or amount < 0:
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"Invalid decimal amount {value!r} at {path.name}",
        )
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _integer_minor_units(provider: ProviderName, path: FieldPath, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"Invalid minor-unit amount {value!r} at {path.name}",
        )
    return value


def _timestamp(provider: ProviderName, path: Optional[FieldPath], value: Any) -> Optional[datetime]:
    if value is None or path is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"Invalid unix timestamp {value!r} at {path.name}",
        )
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise UnrecognizedPayloadError(
            provider=provider.value,
            message=f"Invalid unix timestamp {value!r} at {path.name}",
        ) from exc


class EventNormalizer(Protocol):
    """Provider specific translation of a raw envelope."""

    provider: ProviderName

    def normalize(self, raw_event: Mapping[str, Any]) -> NormalizedEvent:
        ...


class PayPalEventNormalizer:
    """PayPal nests the checkout correlation id in ``custom_id``/``reference_id``."""

    provider = ProviderName.PAYPAL

    INVOICE_CORRELATION_PATHS = _paths(
        "resource.custom_id",
        "resource.reference_id",
        "resource.purchase_units[0].custom_id",
        "resource.purchase_units[0].reference_id",
    )
    SUBSCRIPTION_CORRELATION_PATHS = _paths(
        "resource.id",
        "resource.subscription_id",
        "resource.billing_agreement_id",
    )
    PROVIDER_REF_PATHS = _paths("resource.id", "resource.order_id")
    AMOUNT_PATHS = _paths(
        "resource.amount.total",
        "resource.amount.value",
        "resource.purchase_units[0].amount.value",
    )
    CURRENCY_PATHS = _paths(
        "resource.amount.currency",
        "resource.amount.currency_code",
        "resource.purchase_units[0].amount.currency_code",
    )

    def normalize(self, raw_event: Mapping[str, Any]) -> NormalizedEvent:
        try:
            envelope = PayPalWebhookEnvelope.model_validate(raw_event)
        except ValidationError as exc:
            raise UnrecognizedPayloadError(
                provider=self.provider.value,
                message=f"Malformed PayPal webhook envelope: {exc.error_count()} error(s)",
            ) from exc

        document = envelope.model_dump()
        kind = classify_event(self.provider, envelope.event_type)
        correlation_id: Optional[str] = None
        provider_ref: Optional[str] = None
        amount_cents: Optional[int] = None
        currency: Optional[str] = None

        if kind.correlates_invoice:
            correlation_id = _require_correlation(
                self.provider, document, self.INVOICE_CORRELATION_PATHS, "Invoice ID"
            )
            provider_ref = first_string(document, self.PROVIDER_REF_PATHS)
            amount_path, raw_amount = _first_present(document, self.AMOUNT_PATHS)
            if amount_path is not None:
                amount_cents = _decimal_to_minor_units(self.provider, amount_path, raw_amount)
            currency = first_string(document, self.CURRENCY_PATHS)
        elif kind.correlates_subscription:
            correlation_id = _require_correlation(
                self.provider, document, self.SUBSCRIPTION_CORRELATION_PATHS, "Subscription ID"
            )
            provider_ref = correlation_id

        return NormalizedEvent(
            provider=self.provider,
            event_type=envelope.event_type,
            kind=kind,
            provider_event_id=envelope.id,
            correlation_id=correlation_id,
            provider_ref=provider_ref,
            amount_cents=amount_cents,
            currency=currency,
            raw=dict(raw_event),
        )


class StripeEventNormalizer:
    """Stripe carries the correlation id in object metadata."""

    provider = ProviderName.STRIPE

    SESSION_CORRELATION_PATHS = _paths(
        "data.object.metadata.invoiceId",
        "data.object.metadata.invoice_id",
        "data.object.client_reference_id",
    )
    # The trailing object id is the provider invoice id, matched by the engine
    # against Invoice.provider_invoice_id.
    INVOICE_CORRELATION_PATHS = _paths(
        "data.object.metadata.invoiceId",
        "data.object.metadata.invoice_id",
        "data.object.subscription_details.metadata.invoiceId",
        "data.object.id",
    )
    SUBSCRIPTION_CORRELATION_PATHS = _paths("data.object.id")
    PROVIDER_REF_PATHS = _paths("data.object.id")
    AMOUNT_PATHS = _paths(
        "data.object.amount_total",
        "data.object.amount_paid",
        "data.object.amount_due",
    )
    CURRENCY_PATHS = _paths("data.object.currency")
    PERIOD_START_PATHS = _paths(
        "data.object.current_period_start",
        "data.object.items.data[0].current_period_start",
    )
    PERIOD_END_PATHS = _paths(
        "data.object.current_period_end",
        "data.object.items.data[0].current_period_end",
    )
    STATUS_PATHS = _paths("data.object.status")

    def normalize(self, raw_event: Mapping[str, Any]) -> NormalizedEvent:
        try:
            envelope = StripeWebhookEnvelope.model_validate(raw_event)
        except ValidationError as exc:
            raise UnrecognizedPayloadError(
                provider=self.provider.value,
                message=f"Malformed Stripe webhook envelope: {exc.error_count()} error(s)",
            ) from exc

        document = envelope.model_dump()
        kind = classify_event(self.provider, envelope.type)
        fields: Dict[str, Any] = {}

        if kind.correlates_invoice:
            paths = (
                self.SESSION_CORRELATION_PATHS
                if envelope.type.startswith("checkout.session.")
                else self.INVOICE_CORRELATION_PATHS
            )
            fields["correlation_id"] = _require_correlation(self.provider, document, paths, "Invoice ID")
            fields["provider_ref"] = first_string(document, self.PROVIDER_REF_PATHS)
            amount_path, raw_amount = _first_present(document, self.AMOUNT_PATHS)
            if amount_path is not None:
                fields["amount_cents"] = _integer_minor_units(self.provider, amount_path, raw_amount)
            fields["currency"] = first_string(document, self.CURRENCY_PATHS)
        elif kind.correlates_subscription:
            correlation_id = _require_correlation(
                self.provider, document, self.SUBSCRIPTION_CORRELATION_PATHS, "Subscription ID"
            )
            fields["correlation_id"] = correlation_id
            fields["provider_ref"] = correlation_id
            fields["subscription_status"] = first_string(document, self.STATUS_PATHS)
            fields["current_period_start"] = _timestamp(
                self.provider, *_first_present(document, self.PERIOD_START_PATHS)
            )
            fields["current_period_end"] = _timestamp(
                self.provider, *_first_present(document, self.PERIOD_END_PATHS)
            )

        return NormalizedEvent(
            provider=self.provider,
            event_type=envelope.type,
            kind=kind,
            provider_event_id=envelope.id,
            raw=dict(raw_event),
            **fields,
        )


class ProviderNormalizer:
    """Dispatches raw envelopes to the normalizer for their provider."""

    def __init__(self, normalizers: Optional[Sequence[EventNormalizer]] = None) -> None:
        registered = normalizers or (PayPalEventNormalizer(), StripeEventNormalizer())
        self._normalizers: Dict[ProviderName, EventNormalizer] = {
            normalizer.provider: normalizer for normalizer in registered
        }

    def normalize(self, provider: Union[ProviderName, str], raw_event: Mapping[str, Any]) -> NormalizedEvent:
        try:
            provider_name = ProviderName(provider)
        except ValueError as exc:
            raise UnsupportedProviderError(f"Unsupported payment provider: {provider!r}") from exc

        normalizer = self._normalizers.get(provider_name)
        if normalizer is None:
            raise UnsupportedProviderError(f"No normalizer registered for {provider_name.value}")
        if not isinstance(raw_event, Mapping):
            raise UnrecognizedPayloadError(
                provider=provider_name.value,
                message="Webhook payload must be a JSON object",
            )
        return normalizer.normalize(raw_event)


__all__ = [
    "EventNormalizer",
    "FieldPath",
    "PayPalEventNormalizer",
    "ProviderNormalizer",
    "StripeEventNormalizer",
    "first_string",
]
