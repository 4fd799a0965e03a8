"""Typed configuration for the authentication gate.

All records are immutable pydantic models. ``AuthGateSettings`` is a
pydantic-settings ``BaseSettings`` that reads ``COLLECTOR_AUTH_*``
environment variables, with ``__`` separating nested sections
(``COLLECTOR_AUTH_RATE_LIMIT__THRESHOLD=3``). Everything has a default so
the gate works unconfigured in tests.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "COLLECTOR_AUTH_"


class RateLimitConfig(BaseModel):
    """Client-side login rate limiting.

    Attributes:
        threshold: Consecutive failures that trigger a lockout.
        backoff_schedule: Lockout duration in seconds per lockout cycle;
            the last entry repeats once the schedule is exhausted.
        max_lockout_seconds: Hard cap on any single lockout.
        failure_window_seconds: Failures older than this no longer count.
        warning_threshold: Remaining attempts at or below which the UI warns.
    """

    model_config = ConfigDict(frozen=True)

    threshold: int = Field(default=5, ge=1)
    backoff_schedule: tuple[int, ...] = (30, 60, 300, 900, 3600)
    max_lockout_seconds: int = Field(default=3600, ge=1)
    failure_window_seconds: int = Field(default=900, ge=1)
    warning_threshold: int = Field(default=2, ge=0)

    @field_validator("backoff_schedule")
    @classmethod
    def _non_decreasing(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value:
            raise ValueError("backoff_schedule must not be empty")
        if any(step <= 0 for step in value):
            raise ValueError("backoff_schedule entries must be positive")
        if any(a > b for a, b in zip(value, value[1:])):
            raise ValueError("backoff_schedule must be non-decreasing")
        return value


class MfaConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    code_length: int = Field(default=6, ge=4, le=10)
    challenge_ttl_seconds: int = Field(default=300, ge=1)
    issuer: str = "Collector"


class AuthGateSettings(BaseSettings):
    """Top-level settings for an :class:`AuthSessionController` assembly.

    Example:
        ```python
        # COLLECTOR_AUTH_PROVIDER_URL=https://auth.example.com
        # COLLECTOR_AUTH_PROVIDER_API_KEY=anon-key
        # COLLECTOR_AUTH_RATE_LIMIT__BACKOFF_SCHEDULE=[30, 120, 600]
        # COLLECTOR_AUTH_MFA__ISSUER=Collector
        settings = AuthGateSettings()
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        frozen=True,
    )

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    mfa: MfaConfig = Field(default_factory=MfaConfig)
    mfa_lookup_retries: int = Field(default=1, ge=0)
    storage_prefix: str = "collector"
    provider_url: str | None = None
    provider_api_key: str | None = None
    provider_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _provider_pair(self) -> AuthGateSettings:
        if (self.provider_url is None) != (self.provider_api_key is None):
            raise ValueError("provider_url and provider_api_key must be set together")
        return self

    @classmethod
    def from_env(cls) -> AuthGateSettings:
        """Load and validate settings from ``COLLECTOR_AUTH_*`` variables."""
        return cls()


class LocalAuthFlags(BaseModel):
    """Locally cached MFA and notification flags.

    Load and save through :meth:`SecureCredentialStore.load_flags` and
    :meth:`SecureCredentialStore.save_flags`.
    """

    model_config = ConfigDict(frozen=True)

    mfa_enabled: bool = False
    mfa_factor_id: str | None = None
    notifications_enabled: bool = True


__all__: list[str] = [
    "ENV_PREFIX",
    "RateLimitConfig",
    "MfaConfig",
    "AuthGateSettings",
    "LocalAuthFlags",
]
