"""Inkframe configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "secret_key": "insecure-dev-key-change-me",
}


class InkframeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INKFRAME_")

    environment: str = "development"
    secret_key: str = "insecure-dev-key-change-me"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/inkframe.db"

    # API
    api_title: str = "Inkframe"
    api_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # User session tokens
    session_max_age: int = 604800  # 7 days

    # Weekly generation quota (fixed window, starts at first use)
    weekly_generation_quota: int = 15
    quota_window_seconds: int = 604800

    # Burst limiter (sliding window per user and endpoint)
    burst_limit: int = 6
    burst_window_seconds: int = 60

    # Idempotency leases
    lease_lock_ttl: int = 600  # 10 minutes
    lease_replay_ttl: int = 86400  # 24 hours

    # Image provider
    together_api_key: str = ""
    together_base_url: str = "https://api.together.xyz/v1"
    image_model: str = "google/gemini-3-pro-image"
    image_fallback_model: str = ""
    provider_timeout: int = 120  # seconds, per attempt
    image_temperature: float = 0.1

    # Object storage
    storage_backend: str = "local"  # "local" or "s3"
    storage_local_path: str = "./data/images"
    storage_public_base_url: str = "http://localhost:8080/images"
    s3_bucket: str = ""
    s3_region: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    storage_fetch_timeout: int = 15
    storage_max_image_bytes: int = 20 * 1024 * 1024

    @property
    def provider_count(self) -> int:
        """Number of image backends the fallback chain will try."""
        fallback = self.image_fallback_model.strip()
        if fallback and fallback != self.image_model.strip():
            return 2
        return 1

    @property
    def worst_case_generation_seconds(self) -> int:
        """Upper bound on one saga run: every provider times out, then the upload fetch does."""
        return self.provider_timeout * self.provider_count + self.storage_fetch_timeout

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used outside development or lease TTLs are unsafe."""
        if self.lease_lock_ttl <= self.worst_case_generation_seconds:
            raise RuntimeError(
                f"INKFRAME_LEASE_LOCK_TTL ({self.lease_lock_ttl}s) must exceed the worst-case "
                f"generation latency ({self.worst_case_generation_seconds}s), otherwise a slow "
                "request can lose its idempotency lease while still running."
            )

        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"INKFRAME_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys: set INKFRAME_SECRET_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> InkframeSettings:
    settings = InkframeSettings()
    settings.validate_for_production()
    return settings
