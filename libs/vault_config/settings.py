"""
Vault lease lifecycle settings loaded from environment variables.

Uses Pydantic Settings for type-safe configuration with validation.
All settings are prefixed with VAULT_ (e.g. VAULT_ADDR, VAULT_TOKEN,
VAULT_MIN_RENEWAL_SECONDS) and can also be read from a .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from libs.vault_config.strategy import LeaseStrategyName


class VaultConfigSettings(BaseSettings):
    """Configuration for connecting to Vault and keeping leases fresh."""

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unrelated VAULT_* variables (e.g. VAULT_NAMESPACE for the CLI)
    )

    # Connection
    addr: str = Field(
        default="https://localhost:8200",
        description="Vault server URL",
    )
    verify: bool = Field(
        default=True,
        description="Verify TLS certificates (disable only for local dev)",
    )

    # Authentication
    authentication: Literal["token", "approle"] = Field(
        default="token",
        description="Authentication method: token or approle",
    )
    token: SecretStr = Field(
        default=SecretStr(""),
        description="Vault token for token authentication",
    )
    app_role_role_id: str = Field(
        default="",
        description="AppRole role_id",
    )
    app_role_secret_id: SecretStr = Field(
        default=SecretStr(""),
        description="AppRole secret_id (empty for roles without secret_id binding)",
    )
    app_role_mount_point: str = Field(
        default="approle",
        description="Mount path of the AppRole auth method",
    )

    # Lease lifecycle
    fail_fast: bool = Field(
        default=False,
        description="Raise when the initial fetch of a secret fails instead of logging it",
    )
    config_lifecycle_enabled: bool = Field(
        default=True,
        description="Renew (or rotate) leased secrets before they expire",
    )
    min_renewal_seconds: int = Field(
        default=10,
        ge=0,
        description="Lower bound for the delay between renewals",
    )
    expiry_threshold_seconds: int = Field(
        default=60,
        ge=0,
        description="Renew a lease this many seconds before it expires",
    )
    lease_strategy: LeaseStrategyName = Field(
        default=LeaseStrategyName.DROP_ON_ERROR,
        description="What to do with a lease whose renewal failed",
    )

    # Session lifecycle
    session_lifecycle_enabled: bool = Field(
        default=True,
        description="Refresh the login token before it expires",
    )
    session_refresh_before_expiry_seconds: int = Field(
        default=5,
        ge=0,
        description="Refresh the login token this many seconds before it expires",
    )
    session_expiry_threshold_seconds: int = Field(
        default=7,
        ge=1,
        description="Log in again when a token has less validity left than this",
    )

    scheduler_pool_size: int = Field(
        default=2,
        ge=1,
        le=64,
        description="Worker threads for renewal tasks",
    )

    @model_validator(mode="after")
    def _check_session_timing(self) -> "VaultConfigSettings":
        if self.session_refresh_before_expiry_seconds >= self.session_expiry_threshold_seconds:
            raise ValueError(
                "session_refresh_before_expiry_seconds must be less than "
                "session_expiry_threshold_seconds"
            )
        return self


@lru_cache
def get_settings() -> VaultConfigSettings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    Call get_settings.cache_clear() in tests after changing the environment.
    """
    return VaultConfigSettings()
