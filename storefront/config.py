from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings (customer identity for coupon operations)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Storefront Checkout API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Sender email (defaults to SMTP_USER)
    SMTP_FROM_NAME: str = "Storefront"

    # Frontend URL for email links
    FRONTEND_URL: str = "http://localhost:3000"
    ORDER_LOOKUP_PATH: str = "/order-lookup"

    # Guest order lookup verification
    ORDER_LOOKUP_CODE_EXPIRY_MINUTES: int = 10
    ORDER_LOOKUP_TOKEN_EXPIRY_MINUTES: int = 30
    ORDER_LOOKUP_RESEND_INTERVAL_SECONDS: int = 45
    ORDER_LOOKUP_MAX_ATTEMPTS: int = 5

    # Coupons
    # When True, inactive/expired/exhausted coupons are reported as "not found"
    COUPON_STRICT_LOOKUP: bool = True

    # Background scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    LOOKUP_CLEANUP_HOUR: int = 3  # Nightly purge of expired lookup codes/tokens

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin for origin in self.CORS_ORIGINS if origin]

    @property
    def order_lookup_url(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}{self.ORDER_LOOKUP_PATH}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
