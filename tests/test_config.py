import pytest
from pydantic import ValidationError

from wapi.config import DEFAULT_API_TARGETS, RateLimitPolicy, Settings


@pytest.fixture
def env(monkeypatch):
    for name in ("BCRYPT_ROUNDS", "AUDIT_BUFFERED", "RATE_LIMIT_POLICIES", "API_TARGETS", "ADMIN_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(env):
    settings = Settings(_env_file=None)

    assert settings.bcrypt_rounds == 12
    assert settings.admin_secret == ""
    assert settings.audit_buffered is False
    assert settings.resolved_rate_limit_policies()["weather"] == RateLimitPolicy(60000, 100)
    assert settings.resolved_api_targets() == DEFAULT_API_TARGETS


def test_environment_overrides(env):
    env.setenv("BCRYPT_ROUNDS", "10")
    env.setenv("AUDIT_BUFFERED", "yes")
    env.setenv("ADMIN_SECRET", "s3cret")
    env.setenv("RATE_LIMIT_POLICIES", '{"auth": [300000, 10], "bulk": [1000, 2]}')
    env.setenv("API_TARGETS", '{"weather": "http://weather.internal/v1/forecast"}')

    settings = Settings(_env_file=None)

    assert settings.bcrypt_rounds == 10
    assert settings.audit_buffered is True
    assert settings.admin_secret == "s3cret"

    policies = settings.resolved_rate_limit_policies()
    assert policies["auth"] == RateLimitPolicy(300000, 10)
    assert policies["bulk"] == RateLimitPolicy(1000, 2)
    assert policies["background"] == RateLimitPolicy(60000, 30), "unnamed policies keep their defaults"

    targets = settings.resolved_api_targets()
    assert targets["weather"] == "http://weather.internal/v1/forecast"
    assert targets["geocoding"] == DEFAULT_API_TARGETS["geocoding"]


@pytest.mark.parametrize("name, value", [
    ("BCRYPT_ROUNDS", "many"),
    ("BCRYPT_ROUNDS", "2"),
    ("RATE_LIMIT_POLICIES", '{"auth": "fast"}'),
])
def test_invalid_values_are_rejected(env, name, value):
    env.setenv(name, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
