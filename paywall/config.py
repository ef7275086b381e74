from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for Paywall API"""

    # Server
    host: str = "0.0.0.0"
    port: int = 8010

    # Database
    database_url: str = "postgresql+asyncpg://localhost/journal"

    # Environment
    environment: str = "development"

    # JWT Settings (must match Identity Service!)
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id: str = ""
    stripe_product_name: str = "Journal Membership"
    stripe_price_amount: int = 499  # cents, monthly
    stripe_price_currency: str = "usd"
    gateway_timeout_seconds: float = 10.0

    # Quota rules
    free_article_limit: int = 5
    unlimited_article_limit: int = 999999
    past_due_grace_days: int = 3

    # Scheduled maintenance
    cron_api_key: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


settings = Settings()
