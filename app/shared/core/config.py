from functools import lru_cache
from typing import Optional
import base64
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


class Settings(BaseSettings):
    """
    Main configuration for the Backoffice API.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Backoffice"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2
    # Set true to allow tests to use DATABASE_URL (e.g., integration tests against Postgres).
    ALLOW_TEST_DATABASE_URL: bool = False

    # Secrets codec (integration client secrets, provisioning tokens)
    ENCRYPTION_KEY: Optional[str] = None
    ENCRYPTION_FALLBACK_KEYS: list[str] = []
    # Set via environment variable: export KDF_SALT="<base64-encoded-random-32-bytes>"
    KDF_SALT: Optional[str] = None
    KDF_ITERATIONS: int = 100000

    # Microsoft Entra ID / Graph
    ENTRA_LOGIN_BASE_URL: str = "https://login.microsoftonline.com"
    GRAPH_API_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_BETA_API_BASE_URL: str = "https://graph.microsoft.com/beta"
    GRAPH_SCOPE: str = "https://graph.microsoft.com/.default"
    # Unfiltered group listing is bounded to one page of this size.
    GRAPH_GROUPS_PAGE_SIZE: int = 200
    GRAPH_MAX_PAGES: int = 50
    GRAPH_TIMEOUT_SECONDS: float = 20.0
    GRAPH_TOKEN_EXPIRY_SKEW_SECONDS: int = 60

    # Directory sync run guard
    DIRECTORY_SYNC_LOCK_TTL_SECONDS: int = 900

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.GRAPH_TOKEN_EXPIRY_SKEW_SECONDS < 0:
            raise ValueError("GRAPH_TOKEN_EXPIRY_SKEW_SECONDS must be >= 0.")
        if self.GRAPH_GROUPS_PAGE_SIZE < 1 or self.GRAPH_GROUPS_PAGE_SIZE > 999:
            raise ValueError("GRAPH_GROUPS_PAGE_SIZE must be between 1 and 999.")
        if self.GRAPH_MAX_PAGES < 1:
            raise ValueError("GRAPH_MAX_PAGES must be >= 1.")
        if self.DIRECTORY_SYNC_LOCK_TTL_SECONDS < 30:
            raise ValueError("DIRECTORY_SYNC_LOCK_TTL_SECONDS must be >= 30.")
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_environment_safety()

        return self

    def _validate_core_secrets(self) -> None:
        """Validates the secrets codec key material."""
        if not self.ENCRYPTION_KEY or len(self.ENCRYPTION_KEY) < 32:
            raise ValueError("ENCRYPTION_KEY must be set to a secure value (>= 32 chars).")

        if not self.KDF_SALT:
            raise ValueError("KDF_SALT must be set (base64-encoded random 32 bytes).")
        try:
            decoded_salt = base64.b64decode(self.KDF_SALT)
            if len(decoded_salt) != 32:
                raise ValueError("KDF_SALT must decode to exactly 32 bytes.")
        except Exception as exc:
            raise ValueError("KDF_SALT must be valid base64.") from exc

        for fallback in self.ENCRYPTION_FALLBACK_KEYS:
            if len(fallback) < 32:
                raise ValueError("ENCRYPTION_FALLBACK_KEYS entries must be >= 32 chars.")

    def _validate_database_config(self) -> None:
        """Validates database connectivity settings."""
        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be secure in production (current: {self.DB_SSL_MODE})."
                )
            if self.DB_SSL_MODE in {"verify-ca", "verify-full"} and not self.DB_SSL_CA_CERT_PATH:
                raise ValueError(
                    "DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE is verify-ca or verify-full in production."
                )

    def _validate_environment_safety(self) -> None:
        """Non-blocking deployment warnings."""
        if self.is_production or self.ENVIRONMENT == ENV_STAGING:
            logger = structlog.get_logger()
            for url in [
                self.ENTRA_LOGIN_BASE_URL,
                self.GRAPH_API_BASE_URL,
                self.GRAPH_BETA_API_BASE_URL,
            ]:
                if url.startswith("http://"):
                    logger.warning("insecure_url_in_production", url=url)

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
