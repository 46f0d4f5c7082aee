from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "mysql+pymysql://family:familypassword@db:3306/family_portal?charset=utf8mb4"

    # Redis (identity provider sessions)
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_FAMILY_BASE_MONTHLY: str = ""
    STRIPE_PRICE_FAMILY_BASE_YEARLY: str = ""
    STRIPE_PRICE_ADDITIONAL_CHILD_MONTHLY: str = ""
    STRIPE_PRICE_ADDITIONAL_CHILD_YEARLY: str = ""

    # Resend
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"

    # Site
    SITE_URL: str = "http://localhost:3000"
    SITE_NAME: str = "Starbiz Academy"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # Sessions
    SESSION_TIMEOUT_MINUTES: int = 60

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True

    # Environment
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
