import re

import pytest

from cloud_api.app.licensing import (
    KEY_ALPHABET,
    LicensePlanCatalog,
    generate_license_key,
    is_trial_plan,
)


def test_default_catalog_device_limits():
    catalog = LicensePlanCatalog()

    assert catalog.device_limits() == {"trial": 1, "starter": 1, "pro": 3}
    assert catalog.max_devices_for("pro") == 3
    assert catalog.max_devices_for("enterprise") == 1
    assert catalog.get("trial").is_trial


def test_device_limit_overrides_extend_catalog():
    catalog = LicensePlanCatalog.with_device_limits({"pro": 5, "enterprise": 25})

    assert catalog.max_devices_for("pro") == 5
    assert catalog.max_devices_for("enterprise") == 25
    assert catalog.max_devices_for("starter") == 1
    assert catalog.get("pro").label == "Pro"


def test_invalid_device_limits_are_rejected():
    with pytest.raises(ValueError):
        LicensePlanCatalog.with_device_limits({"pro": 0})
    with pytest.raises(ValueError):
        LicensePlanCatalog(default_max_devices=0)


def test_is_trial_plan():
    assert is_trial_plan("trial")
    assert not is_trial_plan("starter")


def test_catalog_classifies_trial_plans():
    catalog = LicensePlanCatalog.with_device_limits({"enterprise": 10})

    assert catalog.is_trial("trial") is True
    assert catalog.is_trial("starter") is False
    assert catalog.is_trial("enterprise") is False
    assert catalog.is_trial("unlisted") is False


def test_generated_key_format():
    key = generate_license_key()

    assert re.fullmatch(r"CSTY(-[A-Z2-9]{4}){3}", key)
    assert not set(key.replace("CSTY-", "").replace("-", "")) - set(KEY_ALPHABET)


def test_generated_key_custom_shape():
    key = generate_license_key("POS", groups=2, group_length=6)

    prefix, *groups = key.split("-")
    assert prefix == "POS"
    assert [len(group) for group in groups] == [6, 6]
    for ambiguous in "0O1I":
        assert ambiguous not in "".join(groups)


def test_generated_keys_differ():
    assert len({generate_license_key() for _ in range(50)}) == 50


def test_generate_license_key_validates_shape():
    with pytest.raises(ValueError):
        generate_license_key(groups=0)
