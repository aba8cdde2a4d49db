"""Configuration management for the relay authentication engine."""

from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoragePolicy(str, Enum):
    """Where session information lives on the client side.

    COOKIE_ONLY keeps nothing but the server's httpOnly cookies.
    COOKIE_WITH_CACHE additionally mirrors non-sensitive user info
    (username, role) in a process-local cache that is never written to disk.
    """

    COOKIE_ONLY = "cookie_only"
    COOKIE_WITH_CACHE = "cookie_with_cache"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_AUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Relay API
    base_url: str = Field(
        default="http://localhost:3001", description="Base URL of the relay admin API"
    )
    request_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")

    # Session endpoints
    login_path: str = Field(default="/api/auth/login")
    me_path: str = Field(default="/api/auth/me")
    refresh_path: str = Field(default="/api/auth/refresh")
    logout_path: str = Field(default="/api/auth/logout")

    # Anti-forgery
    csrf_token_path: str = Field(default="/api/auth/csrf-token")
    csrf_header_name: str = Field(default="X-CSRF-Token")

    # Session lifetime
    access_token_lifetime: float = Field(
        default=15 * 60, description="Lifetime of the access cookie in seconds"
    )
    renew_before_expiry: float = Field(
        default=60, description="Renew this many seconds before the access cookie expires"
    )
    max_renewal_failures: int = Field(
        default=3, description="Consecutive transport failures before a renewal gives up"
    )
    storage_policy: StoragePolicy = Field(
        default=StoragePolicy.COOKIE_ONLY,
        description="Whether to mirror user info in a non-persistent local cache",
    )

    # Device authorization grant
    device_flow_init_path: str = Field(default="/api/azure-setup/setup/init")
    device_flow_poll_path: str = Field(default="/api/azure-setup/setup/poll")
    device_flow_create_app_path: str = Field(default="/api/azure-setup/setup/create-app")
    device_flow_default_interval: float = Field(
        default=5, description="Polling interval when the server does not send one"
    )
    device_flow_slow_down_increment: float = Field(
        default=5, description="Seconds added to the interval on each slow_down"
    )
    device_flow_max_transport_errors: int = Field(
        default=3, description="Consecutive transport errors before polling fails"
    )

    # WebAuthn
    webauthn_register_begin_path: str = Field(default="/api/mfa/fido2/register/begin")
    webauthn_register_complete_path: str = Field(default="/api/mfa/fido2/register/complete")
    webauthn_authenticate_begin_path: str = Field(default="/api/mfa/fido2/authenticate/begin")
    webauthn_authenticate_complete_path: str = Field(
        default="/api/mfa/fido2/authenticate/complete"
    )
    webauthn_default_timeout_ms: int = Field(default=60_000)

    # MFA enrollment management
    mfa_status_path: str = Field(default="/api/mfa/status")
    mfa_devices_path: str = Field(default="/api/mfa/fido2/devices")
    mfa_backup_codes_path: str = Field(default="/api/mfa/backup/generate")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Path | None = Field(default=None, description="Optional log file path")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate that base_url is an HTTP(S) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Relay base URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator(
        "access_token_lifetime",
        "request_timeout",
        "device_flow_default_interval",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate that durations are positive."""
        if v <= 0:
            raise ValueError("Duration must be positive")
        return v

    @model_validator(mode="after")
    def validate_renewal_window(self) -> "Settings":
        """Validate that renewal happens before the access cookie expires."""
        if not 0 <= self.renew_before_expiry < self.access_token_lifetime:
            raise ValueError("renew_before_expiry must be between 0 and access_token_lifetime")
        return self


# Global settings instance
settings = Settings()
