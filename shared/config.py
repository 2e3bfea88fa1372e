"""
Shared configuration management for the Access Token Broker.
"""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ISSUER = "https://accounts.google.com"
DEFAULT_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Field names map to environment variables case-insensitively, so
    ``rate_per_min`` is read from ``RATE_PER_MIN``. Blank variables fall back
    to the default.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        str_strip_whitespace=True,
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Identity provider
    oidc_client_id: str = Field(min_length=1)
    oidc_issuer: str = Field(default=DEFAULT_ISSUER, min_length=1)

    # Provider credential
    google_sa_json: str = Field(min_length=1, repr=False)
    token_scope: str = Field(default=DEFAULT_SCOPE, min_length=1)

    # HTTP surface
    cors_origin: str = Field(default="*")
    allowed_hd: Optional[str] = Field(default=None)

    # Rate limiting
    rate_per_min: int = Field(default=60, gt=0)
    rate_burst: int = Field(default=30, gt=0)
    ip_rate_per_min: int = Field(default=120, gt=0)
    ip_burst: int = Field(default=60, gt=0)
    rate_cleanup_mins: int = Field(default=30, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _drop_blank_values(cls, data):
        # whitespace-only values count as unset
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if not (isinstance(value, str) and not value.strip())}
        return data


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "broker"
    host: str = "0.0.0.0"
    port: int = 10000


def get_config(service_name: str, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
