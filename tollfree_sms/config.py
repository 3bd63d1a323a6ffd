from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    The instance is frozen: it is built once at startup and handed to the
    carrier client, orchestrator and workers instead of being looked up
    at call time.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        frozen=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./tollfree_sms.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Surge carrier API
    SURGE_API_KEY: str = ""
    SURGE_API_BASE: str = "https://api.surge.app"
    SURGE_ACCOUNT_ID: str = ""
    SURGE_USE_SUBACCOUNTS: bool = False
    SURGE_TIMEOUT_SECONDS: float = 15.0

    # Webhook Security
    SURGE_WEBHOOK_SECRET: str = ""
    # Maximum age of a signed webhook in seconds; 0 (default) accepts any timestamp
    SURGE_WEBHOOK_TOLERANCE_SECONDS: int = 0

    # Global toll-free number capacity; 0 means unlimited
    SURGE_MAX_NUMBERS: int = 0

    # Operator / scheduler shared secrets
    ADMIN_TOKEN: str = ""
    CRON_SECRET: str = ""

    # Owner authentication (tokens are issued by the external auth service)
    AUTH_JWT_SECRET: str = ""
    AUTH_JWT_ALGORITHM: str = "HS256"

    # Compliance content
    SUPPORT_EMAIL: str = "support@myblipp.com"
    DEFAULT_PRIVACY_URL: str = "https://myblipp.com/privacy"
    DEFAULT_TERMS_URL: str = "https://myblipp.com/terms"

    # Status reconciler
    RECONCILE_BATCH_SIZE: int = 200

    @property
    def capacity_unlimited(self) -> bool:
        """A capacity of 0 disables the global number limit."""
        return self.SURGE_MAX_NUMBERS <= 0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
