"""Static catalog definitions for license plans."""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional

TRIAL_PLAN = "trial"

DEFAULT_MAX_DEVICES = 1


@dataclass(frozen=True)
class LicensePlanDefinition:
    """Describes a license plan and the devices it may bind."""

    plan_id: str
    label: str
    description: str
    max_devices: int = DEFAULT_MAX_DEVICES

    @property
    def is_trial(self) -> bool:
        return self.plan_id == TRIAL_PLAN


LICENSE_PLAN_CATALOG: Dict[str, LicensePlanDefinition] = {
    TRIAL_PLAN: LicensePlanDefinition(
        plan_id=TRIAL_PLAN,
        label="Trial",
        description="Three day evaluation with one POS device",
        max_devices=1,
    ),
    "starter": LicensePlanDefinition(
        plan_id="starter",
        label="Starter",
        description="Single store with one POS device",
        max_devices=1,
    ),
    "pro": LicensePlanDefinition(
        plan_id="pro",
        label="Pro",
        description="Up to three active POS devices",
        max_devices=3,
    ),
}


class LicensePlanCatalog:
    """Plan to device-limit table injected into the reconciliation engine."""

    def __init__(
        self,
        plans: Optional[Mapping[str, LicensePlanDefinition]] = None,
        *,
        default_max_devices: int = DEFAULT_MAX_DEVICES,
    ) -> None:
        self._plans: Dict[str, LicensePlanDefinition] = dict(
            LICENSE_PLAN_CATALOG if plans is None else plans
        )
        if default_max_devices < 1:
            raise ValueError("default_max_devices must be >= 1")
        self._default_max_devices = default_max_devices

    @classmethod
    def with_device_limits(cls, overrides: Mapping[str, int]) -> "LicensePlanCatalog":
        """Return the default catalog with per-plan device limits replaced."""

        plans = dict(LICENSE_PLAN_CATALOG)
        for plan_id, limit in overrides.items():
            if limit < 1:
                raise ValueError(f"max_devices for plan {plan_id!r} must be >= 1")
            existing = plans.get(plan_id)
            if existing is None:
                plans[plan_id] = LicensePlanDefinition(
                    plan_id=plan_id,
                    label=plan_id.title(),
                    description="",
                    max_devices=limit,
                )
            else:
                plans[plan_id] = replace(existing, max_devices=limit)
        return cls(plans)

    def get(self, plan_id: str) -> Optional[LicensePlanDefinition]:
        return self._plans.get(plan_id)

    def is_trial(self, plan_id: str) -> bool:
        definition = self.get(plan_id)
        if definition is None:
            return is_trial_plan(plan_id)
        return definition.is_trial

    def max_devices_for(self, plan_id: str) -> int:
        definition = self._plans.get(plan_id)
        if definition is None:
            return self._default_max_devices
        return definition.max_devices

    def device_limits(self) -> Dict[str, int]:
        return {plan_id: plan.max_devices for plan_id, plan in self._plans.items()}


def is_trial_plan(plan_id: str) -> bool:
    return plan_id == TRIAL_PLAN
