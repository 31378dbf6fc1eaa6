from __future__ import annotations

import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings  # noqa: E402


def _settings(**overrides) -> Settings:
    values = {"ENVIRONMENT": "development", "PUSH_MODE": "stub"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_default_development_configuration_is_valid():
    _settings().validate_runtime_configuration()


@pytest.mark.parametrize("field", ["WRITE_BATCH_LIMIT", "NOTIFICATION_BATCH_LIMIT"])
@pytest.mark.parametrize("value", [0, 501, 1000])
def test_batch_limits_outside_store_range_fail_in_every_environment(field, value):
    with pytest.raises(RuntimeError, match=field):
        _settings(**{field: value}).validate_runtime_configuration()


def test_production_requires_http_push_gateway():
    with pytest.raises(RuntimeError, match="PUSH_MODE"):
        _settings(ENVIRONMENT="production").validate_runtime_configuration()

    _settings(
        ENVIRONMENT="production",
        PUSH_MODE="http",
        PUSH_GATEWAY_URL="https://push.example.test/send",
        PUSH_GATEWAY_TOKEN="secret",
    ).validate_runtime_configuration()
