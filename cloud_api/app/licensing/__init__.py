"""License plan catalog and key generation."""

from .catalog import (
    DEFAULT_MAX_DEVICES,
    LICENSE_PLAN_CATALOG,
    TRIAL_PLAN,
    LicensePlanCatalog,
    LicensePlanDefinition,
    is_trial_plan,
)
from .keys import DEFAULT_KEY_PREFIX, KEY_ALPHABET, generate_license_key

__all__ = [
    "DEFAULT_KEY_PREFIX",
    "DEFAULT_MAX_DEVICES",
    "KEY_ALPHABET",
    "LICENSE_PLAN_CATALOG",
    "LicensePlanCatalog",
    "LicensePlanDefinition",
    "TRIAL_PLAN",
    "generate_license_key",
    "is_trial_plan",
]
