import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    SETTLEMENT_DB_USER: str      = os.getenv("SETTLEMENT_DB_USER", "")
    SETTLEMENT_DB_PASSWORD: str  = os.getenv("SETTLEMENT_DB_PASSWORD", "")
    SETTLEMENT_DB_NAME: str      = os.getenv("SETTLEMENT_DB_NAME", "")
    SETTLEMENT_DB_HOST: str      = os.getenv("SETTLEMENT_DB_HOST", "localhost")
    SETTLEMENT_DB_PORT: int      = int(os.getenv("SETTLEMENT_DB_PORT", "5432"))
    DATABASE_URL: str            = os.getenv("DATABASE_URL", "")
    DB_ECHO: bool                = False

    RABBIT_USER: str             = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str         = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str             = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int             = int(os.getenv("RABBIT_PORT", "5672"))

    OUTBOX_POLL_INTERVAL: int    = int(os.getenv("OUTBOX_POLL_INTERVAL", "5"))
    OUTBOX_BATCH_SIZE: int       = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    OUTBOX_GRACE_SECONDS: int    = int(os.getenv("OUTBOX_GRACE_SECONDS", "30"))

    SETTLEMENT_CURRENCY: str     = "EUR"
    PLATFORM_FEE_PERCENT: int    = 10

    EXCHANGE_RATE_URL: str       = "https://api.exchangerate-api.com/v4/latest/EUR"
    EXCHANGE_RATE_TTL_SECONDS: int = 3600
    EXCHANGE_RATE_RETRY_SECONDS: int = 60
    FALLBACK_USD_TO_EUR: str     = "0.92"
    FALLBACK_GBP_TO_EUR: str     = "1.17"

    STRIPE_SECRET_KEY: str       = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str   = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_BASE: str         = "https://api.stripe.com"
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    LAVA_API_KEY: str            = os.getenv("LAVA_API_KEY", "")
    LAVA_OFFER_ID: str           = os.getenv("LAVA_OFFER_ID", "")
    LAVA_API_BASE: str           = "https://api.lava.top"

    RESEND_API_KEY: str          = os.getenv("RESEND_API_KEY", "")
    RESEND_API_BASE: str         = "https://api.resend.com"
    EMAIL_FROM: str              = os.getenv("EMAIL_FROM", "onboarding@resend.dev")
    SITE_URL: str                = os.getenv("SITE_URL", "https://allclothes.store")

    HTTP_TIMEOUT_SECONDS: float  = 10.0

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.SETTLEMENT_DB_USER}:"
            f"{self.SETTLEMENT_DB_PASSWORD}"
            f"@{self.SETTLEMENT_DB_HOST}:"
            f"{self.SETTLEMENT_DB_PORT}/"
            f"{self.SETTLEMENT_DB_NAME}"
        )

settings = Settings()
