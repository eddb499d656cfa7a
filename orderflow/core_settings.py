from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    SERVICE_NAME: str = "orderflow-service"
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "eci"
    POSTGRES_USER: str = "eci"
    POSTGRES_PASSWORD: str = "eci"
    # Overrides the POSTGRES_* parts when set (tests use sqlite)
    DATABASE_URL: Optional[str] = None

    REDIS_URL: Optional[str] = "redis://redis:6379/0"
    CACHE_TTL_SECONDS: int = 3600
    LOCAL_CACHE_SIZE: int = 1024

    PRODUCTS_SERVICE_URL: str = "http://products:8000"
    PRODUCTS_TIMEOUT_SECONDS: float = 5.0

    STRIPE_SECRET_KEY: str = "sk_test_change_me"
    STRIPE_WEBHOOK_SECRET: str = "whsec_change_me"
    STRIPE_API_VERSION: str = "2023-10-16"
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    # Pricing policy; configurable, not business law
    TAX_RATE: Decimal = Decimal("0.08")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("100.00")
    BASE_SHIPPING_FEE: Decimal = Decimal("9.99")
    PER_ITEM_SHIPPING_FEE: Decimal = Decimal("2.99")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
