import pytest

from cloud_api.app.billing.config import load_database_config, load_reconciliation_config


def test_defaults_when_environment_is_empty():
    config = load_reconciliation_config({})

    assert config.license_key_prefix == "CSTY"
    assert config.fallback_period_months == 1
    assert config.plan_device_limits == {}
    assert config.notifications_backend == "log"
    assert config.database.host == "127.0.0.1"
    assert config.database.port == 5432


def test_values_are_read_from_environment():
    config = load_reconciliation_config(
        {
            "LICENSE_KEY_PREFIX": "pos",
            "LICENSE_FALLBACK_PERIOD_MONTHS": "12",
            "LICENSE_PLAN_DEVICE_LIMITS": "pro=5, enterprise=20,",
            "BILLING_NOTIFICATIONS_BACKEND": "Database",
        }
    )

    assert config.license_key_prefix == "POS"
    assert config.fallback_period_months == 12
    assert config.plan_device_limits == {"pro": 5, "enterprise": 20}
    assert config.notifications_backend == "database"


@pytest.mark.parametrize(
    "env",
    [
        {"LICENSE_FALLBACK_PERIOD_MONTHS": "0"},
        {"LICENSE_FALLBACK_PERIOD_MONTHS": "monthly"},
        {"LICENSE_PLAN_DEVICE_LIMITS": "pro"},
        {"LICENSE_PLAN_DEVICE_LIMITS": "pro=0"},
        {"BILLING_NOTIFICATIONS_BACKEND": "slack"},
        {"DB_CONNECT_TIMEOUT": "-1"},
        {"DB_CONNECT_TIMEOUT": "soon"},
    ],
)
def test_invalid_values_raise(env):
    with pytest.raises(ValueError):
        load_reconciliation_config(env)


def test_database_config_builds_connect_kwargs():
    config = load_database_config(
        {
            "DB_HOST": "db.internal",
            "DB_PORT": "6543",
            "DB_NAME": "billing",
            "DB_USER": "svc",
            "DB_PASSWORD": "secret",
            "DB_CONNECT_TIMEOUT": "2.5",
        }
    )

    assert config.connect_kwargs() == {
        "host": "db.internal",
        "port": 6543,
        "dbname": "billing",
        "user": "svc",
        "password": "secret",
        "connect_timeout": 3,
    }
