"""Runtime configuration.

Values come from environment variables (or a ``.env`` file) and are exposed
both on ``settings`` and as the module-level constants the rest of the
package imports.
"""

from functools import lru_cache
from typing import NamedTuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitPolicy(NamedTuple):
    window_ms: int
    max_requests: int


DEFAULT_RATE_LIMIT_POLICIES = {
    "background": RateLimitPolicy(window_ms=60000, max_requests=30),
    "weather": RateLimitPolicy(window_ms=60000, max_requests=100),
    "auth": RateLimitPolicy(window_ms=300000, max_requests=5),
    "default": RateLimitPolicy(window_ms=60000, max_requests=50),
}

DEFAULT_API_TARGETS = {
    "weather": "https://api.open-meteo.com/v1/forecast",
    "geocoding": "https://geocoding-api.open-meteo.com/v1/search",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/wapi"
    redis_url: str = "redis://redis:6379"

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    max_keys_per_user: int = Field(default=10, ge=1)
    # empty means the admin surface is disabled
    admin_secret: str = ""

    rate_limit_window_ms: int = Field(default=60000, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)
    # merged over the built-in policies, e.g. RATE_LIMIT_POLICIES='{"auth": [300000, 10]}'
    rate_limit_policies: dict[str, tuple[int, int]] = Field(default_factory=dict)

    audit_buffered: bool = False
    audit_flush_interval_seconds: int = 60
    audit_max_attempts: int = Field(default=3, ge=1)
    audit_retention_days: int = 30
    maintenance_interval_seconds: int = 3600

    # merged over the Open-Meteo defaults
    api_targets: dict[str, str] = Field(default_factory=dict)

    expose_error_details: bool = False
    log_level: str = "INFO"

    def resolved_rate_limit_policies(self) -> dict[str, RateLimitPolicy]:
        policies = dict(DEFAULT_RATE_LIMIT_POLICIES)
        for name, (window_ms, max_requests) in self.rate_limit_policies.items():
            policies[name] = RateLimitPolicy(window_ms, max_requests)
        return policies

    def resolved_api_targets(self) -> dict[str, str]:
        return {**DEFAULT_API_TARGETS, **self.api_targets}


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

DATABASE_URL = settings.database_url
REDIS_URL = settings.redis_url

API_KEY_PREFIX = "wapi_"
BCRYPT_ROUNDS = settings.bcrypt_rounds
MAX_KEYS_PER_USER = settings.max_keys_per_user
ADMIN_SECRET = settings.admin_secret

RATE_LIMIT_WINDOW_MS = settings.rate_limit_window_ms
RATE_LIMIT_MAX_REQUESTS = settings.rate_limit_max_requests
RATE_LIMIT_POLICIES = settings.resolved_rate_limit_policies()

AUDIT_BUFFERED = settings.audit_buffered
AUDIT_BUFFER_KEY = "api_audit_buffer"
AUDIT_FLUSH_INTERVAL_SECONDS = settings.audit_flush_interval_seconds
AUDIT_MAX_ATTEMPTS = settings.audit_max_attempts
AUDIT_RETENTION_DAYS = settings.audit_retention_days

MAINTENANCE_INTERVAL_SECONDS = settings.maintenance_interval_seconds

API_TARGETS = settings.resolved_api_targets()

MAX_REQUEST_SIZE = 10 * 1024 * 1024

EXPOSE_ERROR_DETAILS = settings.expose_error_details
LOG_LEVEL = settings.log_level
