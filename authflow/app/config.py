"""
Configuration module for the authentication service.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider (Keycloak realm and client), the transient state
store (Redis), session cookies and the HTTP listener.

Environment variables are loaded from .env file or system environment.
A missing required value raises a ValidationError when the settings are first
loaded, which aborts startup.
"""

from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Identity provider, session store, cookie policy and server options
    are all defined here.
    """

    # =========================================================================
    # Identity Provider (Keycloak / OIDC)
    # =========================================================================

    KEYCLOAK_URL: str = Field(
        ...,
        description="Base address of the identity provider (e.g., https://sso.example.com)",
        min_length=1,
    )

    KEYCLOAK_REALM: str = Field(
        ...,
        description="Realm (tenant) that issues tokens for this client",
        min_length=1,
    )

    KEYCLOAK_CLIENT_ID: str = Field(
        ...,
        description="OAuth client ID registered in the realm",
        min_length=1,
    )

    KEYCLOAK_CLIENT_SECRET: str = Field(
        ...,
        description="OAuth client secret (confidential client)",
        min_length=1,
    )

    REDIRECT_URL: str = Field(
        ...,
        description="Callback URL registered with the provider (e.g., https://app.example.com/auth/callback)",
        min_length=1,
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email roles",
        description="Space-separated scopes requested at login (must include 'openid')",
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every call to the identity provider",
        gt=0,
        le=120,
    )

    TOKEN_LEEWAY_SECONDS: int = Field(
        default=10,
        description="Clock skew tolerance when validating exp/nbf/iat",
        ge=0,
        le=300,
    )

    SESSION_REQUIRE_AZP: bool = Field(
        default=True,
        description="Require the access token's 'azp' claim (when present) to match the client ID",
    )

    # =========================================================================
    # Transient State Store (Redis)
    # =========================================================================

    STORE_BACKEND: str = Field(
        default="redis",
        description="Store implementation: 'redis' or 'memory' (single process only)",
    )

    REDIS_HOST: str = Field(default="localhost", description="Redis host")

    REDIS_PORT: int = Field(default=6379, description="Redis port", ge=1, le=65535)

    REDIS_DB: int = Field(default=0, description="Redis database index", ge=0)

    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Redis password")

    REDIS_SOCKET_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Socket connect/read timeout for Redis commands",
        gt=0,
        le=60,
    )

    STORE_READ_ATTEMPTS: int = Field(
        default=2,
        description="Attempts for idempotent store reads on connection errors",
        ge=1,
        le=5,
    )

    # =========================================================================
    # Sessions & Cookies
    # =========================================================================

    SESSION_DURATION_SECONDS: int = Field(
        default=3600,
        description="Lifetime of a session record and its cookie",
        ge=60,
        le=7 * 24 * 3600,
    )

    CSRF_STATE_TTL_SECONDS: int = Field(
        default=120,
        description="Lifetime of a pending login's CSRF state token",
        ge=10,
        le=900,
    )

    COOKIE_SECURE: bool = Field(
        default=True,
        description="Set the Secure attribute on the session cookie",
    )

    LANDING_PATH: str = Field(
        default="/dashboard",
        description="Where the browser is sent after a successful login",
    )

    LOGIN_ENTRY_PATH: str = Field(
        default="/",
        description="Where unauthenticated requests to protected resources are sent",
    )

    # =========================================================================
    # Server
    # =========================================================================

    APP_HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    APP_PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def provider_url(self) -> str:
        """
        Issuer URL of the configured realm.

        Returns:
            ``{KEYCLOAK_URL}/realms/{KEYCLOAK_REALM}``
        """
        return f"{self.KEYCLOAK_URL}/realms/{self.KEYCLOAK_REALM}"

    @property
    def scopes_list(self) -> List[str]:
        return self.OIDC_SCOPES.split()

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("KEYCLOAK_URL", "REDIRECT_URL")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """
        Validate that the value is an absolute http(s) URL.

        Raises:
            ValueError: If the scheme or host is missing
        """
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Expected an absolute http(s) URL, got: '{v}'")
        return v.strip().rstrip("/")

    @field_validator("OIDC_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        scopes = v.split()
        if "openid" not in scopes:
            raise ValueError("OIDC_SCOPES must include 'openid'")
        return " ".join(scopes)

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("redis", "memory"):
            raise ValueError(f"STORE_BACKEND must be 'redis' or 'memory', got: {v}")
        return v

    @field_validator("LANDING_PATH", "LOGIN_ENTRY_PATH")
    @classmethod
    def validate_local_path(cls, v: str) -> str:
        # Only same-origin paths; never an open redirect.
        if not v.startswith("/") or v.startswith("//"):
            raise ValueError(f"Expected a local path starting with '/', got: '{v}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Settings are loaded once per process.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
