import pytest

from core.config import load_settings
from core.exceptions import ConfigurationError


def test_defaults():
    settings = load_settings(_env_file=None)

    assert settings.ETL_BATCH_SIZE == 100
    assert settings.SEARCH_MAX_LIMIT == 200
    assert settings.SEARCH_CACHE_TTL_SECONDS == 300
    assert settings.ETL_SCHEDULE is None


@pytest.mark.parametrize("overrides", [
    {"ETL_BATCH_SIZE": 0},
    {"ETL_RATE_LIMIT": 0},
    {"SEARCH_STORE_TIMEOUT_SECONDS": -1},
    {"ETL_RETRY_DELAY_SECONDS": -0.5},
    {"LOG_LEVEL": "LOUD"},
])
def test_invalid_values_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings(_env_file=None, **overrides)

    assert exc_info.value.context["errors"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ETL_BATCH_SIZE", "25")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")

    settings = load_settings(_env_file=None)

    assert settings.ETL_BATCH_SIZE == 25
    assert settings.REDIS_URL == "redis://cache:6379/0"


def test_max_retries_alias(monkeypatch):
    monkeypatch.delenv("ETL_MAX_RETRIES", raising=False)
    monkeypatch.setenv("MAX_RETRIES", "7")

    assert load_settings(_env_file=None).ETL_MAX_RETRIES == 7
