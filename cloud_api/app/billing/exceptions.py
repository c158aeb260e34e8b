"""Exceptions raised while turning provider payloads into reconciliation input."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple


class ReconciliationError(Exception):
    """Base class for reconciliation failures that are not business outcomes."""


@dataclass
class UnrecognizedPayloadError(ReconciliationError):
    """A provider envelope lacks every known location for a required field."""

    provider: str
    message: str
    tried_paths: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        detail = self.message
        if self.tried_paths:
            detail = f"{detail} (tried: {', '.join(self.tried_paths)})"
        super().__init__(detail)


class UnsupportedProviderError(ReconciliationError):
    """Raised for a provider tag with no registered normalizer."""
