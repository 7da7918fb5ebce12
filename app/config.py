"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. This pattern keeps secrets out of source code — the .env file is
gitignored, and .env.example provides a safe template for developers.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from app.config import settings
    print(settings.LEDGER_MAX_RETRIES)
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the funds ledger service.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Shared with the identity service; verifies bearer tokens
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    APP_NAME: str = "Funds Ledger API"
    APP_VERSION: str = "0.2.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for development; swap to a postgresql+asyncpg URL for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./ledger.db"

    # --- Authentication ---
    # REQUIRED: tokens are issued by the identity service, we only verify them
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    # Lifetime of tokens minted by create_access_token (tests, local tooling)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    # --- Ledger store ---
    # Bank code that identifies this institution; transfers addressed to any
    # other bank code are routed to the settlement gateway.
    INTERNAL_BANK_CODE: str = "000"
    LEDGER_LOCK_TIMEOUT_SECONDS: float = 5.0
    LEDGER_MAX_RETRIES: int = 4
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.05

    # --- Idempotency ---
    IDEMPOTENCY_TTL_HOURS: int = 24
    IDEMPOTENCY_WAIT_TIMEOUT_SECONDS: float = 10.0
    IDEMPOTENCY_LEASE_SECONDS: float = 60.0

    # --- External settlement ---
    SETTLEMENT_MODE: Literal["simulated", "http"] = "simulated"
    SETTLEMENT_BASE_URL: str = "http://localhost:8001"
    SETTLEMENT_TIMEOUT_SECONDS: float = 5.0
    SETTLEMENT_WEBHOOK_SECRET: str = "change-me"

    # --- Reconciliation sweep ---
    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: float = 30.0

    # --- Notifications (fire-and-forget) ---
    NOTIFICATION_WEBHOOK_URL: str | None = None


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
