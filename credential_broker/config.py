"""Application configuration using pydantic-settings.

All sensitive configuration must come from environment variables (or a .env
file). The application will fail to start if no credential path is
configured at all.
"""

import secrets
from functools import lru_cache
from typing import Protocol

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credential_broker.oauth import DRIVE_SCOPES, load_client_secrets
from credential_broker.service_account import ServiceAccountCredential, load_service_account

DEFAULT_SCOPES = ",".join(DRIVE_SCOPES)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    At least one of these credential paths must be configured:
    - GOOGLE_CLIENT_ID + GOOGLE_CLIENT_SECRET, or GOOGLE_OAUTH_CLIENT_FILE: user
      OAuth (Authorization-Code flow)
    - GOOGLE_SERVICE_ACCOUNT_JSON or GOOGLE_SERVICE_ACCOUNT_FILE: service account
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not defined in Settings
    )

    # Server
    port: int = 8001
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Security - signs the session cookie carrying the logged-in user id
    secret_key: str = ""

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8001/api/google/callback"
    # Client-secrets JSON from the Cloud console; used when the id/secret
    # variables are not set (e.g. credentials/google-docs-credentials.json)
    google_oauth_client_file: str = ""

    # Comma-separated scopes requested when callers do not name any
    google_oauth_scopes: str = DEFAULT_SCOPES

    # Service account key: inline JSON wins over the file path
    google_service_account_json: str = ""
    google_service_account_file: str = ""
    # Optional user to impersonate via domain-wide delegation
    google_service_account_subject: str = ""

    # Token storage: "memory", "file" or "firestore"
    token_store_backend: str = "memory"
    token_store_path: str = "credentials/google-tokens.json"

    # Firestore (only used by the "firestore" backend)
    google_cloud_project: str = ""
    firestore_database: str = "(default)"

    # Broker tuning
    state_ttl_seconds: int = 600
    token_safety_margin_seconds: int = 60
    http_timeout_seconds: float = 10.0

    # Where the browser lands after the OAuth callback
    post_auth_redirect: str = "/#/google-drive"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def has_oauth_client(self) -> bool:
        return bool(
            (self.google_client_id and self.google_client_secret) or self.google_oauth_client_file
        )

    def get_oauth_scopes(self) -> list[str]:
        """Get list of default OAuth scopes."""
        return [s.strip() for s in self.google_oauth_scopes.split(",") if s.strip()]

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Validate that required settings are configured."""
        errors = []

        # In production, secret_key must be explicitly set
        if self.is_production and not self.secret_key:
            errors.append("SECRET_KEY must be set in production")

        # Generate a random secret key for development if not set
        if not self.secret_key:
            object.__setattr__(self, "secret_key", secrets.token_urlsafe(32))

        if bool(self.google_client_id) != bool(self.google_client_secret):
            errors.append("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set together")

        has_service_account = bool(
            self.google_service_account_json or self.google_service_account_file
        )
        if not self.has_oauth_client and not has_service_account:
            errors.append(
                "Configure GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET, GOOGLE_OAUTH_CLIENT_FILE "
                "or a service account key"
            )

        if self.token_store_backend == "firestore" and not self.google_cloud_project:
            errors.append("GOOGLE_CLOUD_PROJECT must be set for the firestore token store")

        if not self.get_oauth_scopes():
            errors.append("GOOGLE_OAUTH_SCOPES must name at least one scope")

        if errors:
            raise ValueError("Configuration errors:\n  - " + "\n  - ".join(errors))

        return self

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is a known value."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known value."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @field_validator("token_store_backend")
    @classmethod
    def validate_token_store_backend(cls, v: str) -> str:
        allowed = {"memory", "file", "firestore"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"token_store_backend must be one of: {allowed}")
        return v_lower

    @field_validator("state_ttl_seconds")
    @classmethod
    def validate_state_ttl(cls, v: int) -> int:
        """State tokens must expire within 10 minutes."""
        if not 1 <= v <= 600:
            raise ValueError("state_ttl_seconds must be between 1 and 600")
        return v

    @field_validator("http_timeout_seconds")
    @classmethod
    def validate_http_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("http_timeout_seconds must be positive")
        return v


class SecretStore(Protocol):
    """Supplies OAuth client credentials and the service account key at startup."""

    def get_client_credentials(self) -> tuple[str, str]: ...

    def get_service_account(self) -> ServiceAccountCredential | None: ...


class SettingsSecretStore:
    """SecretStore backed by environment settings and the key file they name."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def get_client_credentials(self) -> tuple[str, str]:
        """Environment variables win over the client-secrets file.

        Raises:
            BrokerConfigurationError: The client-secrets file is malformed
        """
        if self._settings.google_client_id and self._settings.google_client_secret:
            return self._settings.google_client_id, self._settings.google_client_secret
        if self._settings.google_oauth_client_file:
            loaded = load_client_secrets(self._settings.google_oauth_client_file)
            if loaded is not None:
                return loaded
        return "", ""

    def get_service_account(self) -> ServiceAccountCredential | None:
        return load_service_account(
            json_key=self._settings.google_service_account_json,
            path=self._settings.google_service_account_file,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the application.
    """
    return Settings()
