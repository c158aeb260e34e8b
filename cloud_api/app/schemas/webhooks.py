"""Envelope schemas for raw payment provider webhooks."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class PayPalWebhookEnvelope(BaseModel):
    """Outer shape shared by every PayPal webhook notification."""

    id: Optional[str] = None
    event_type: str = Field(min_length=1)
    resource_type: Optional[str] = None
    summary: Optional[str] = None
    resource: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class StripeEventData(BaseModel):
    object: Dict[str, Any] = Field(default_factory=dict)
    previous_attributes: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="allow")


class StripeWebhookEnvelope(BaseModel):
    """Outer shape of a Stripe ``event`` object."""

    id: Optional[str] = None
    type: str = Field(min_length=1)
    livemode: bool = False
    created: Optional[int] = None
    data: StripeEventData = Field(default_factory=StripeEventData)

    model_config = ConfigDict(extra="allow")
