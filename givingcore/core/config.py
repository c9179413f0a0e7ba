from __future__ import annotations

import os
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "GivingCore"
    ENV: str = "dev"
    DATABASE_URL: str | None = None

    # Tenant giving account (per-church donations)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    PAYSTACK_SECRET_KEY: str | None = None
    PAYSTACK_WEBHOOK_SECRET: str | None = None

    # Platform billing account (tenant subscriptions)
    PLATFORM_STRIPE_SECRET_KEY: str | None = None
    PLATFORM_STRIPE_WEBHOOK_SECRET: str | None = None
    PLATFORM_PAYSTACK_SECRET_KEY: str | None = None
    PLATFORM_PAYSTACK_WEBHOOK_SECRET: str | None = None

    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PROVIDER_PAGE_SIZE: int = 100
    PROVIDER_HTTP_TIMEOUT: float = 30.0
    STRIPE_WEBHOOK_TOLERANCE: int = 300
    WEBHOOK_RATE_LIMIT: str = "300/minute"

    # Evidence file storage
    S3_ENDPOINT: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_BUCKET: str = "givingcore-evidence"
    S3_REGION: str = "us-east-1"
    EVIDENCE_STORAGE_ROOT: str = "storage/evidence"

    # Billing notices
    BREVO_API_KEY: str | None = None
    FROM_EMAIL: str | None = None
    BREVO_SENDER_NAME: str = "GivingCore Billing"
    BILLING_PORTAL_URL: str = "http://localhost:3001/billing"
    DUNNING_GRACE_DAYS: int = 3
    DUNNING_BATCH_LIMIT: int = 200

    REDIS_URL: str = "redis://localhost:6379/0"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"
    SENTRY_DSN: str | None = None
    AUDIT_LOG_FILE: str = "storage/audit.log"

    @property
    def paystack_webhook_secret(self) -> str | None:
        return self.PAYSTACK_WEBHOOK_SECRET or self.PAYSTACK_SECRET_KEY

    @property
    def platform_paystack_webhook_secret(self) -> str | None:
        return (
            self.PLATFORM_PAYSTACK_WEBHOOK_SECRET
            or self.PAYSTACK_WEBHOOK_SECRET
            or self.PAYSTACK_SECRET_KEY
        )

    @model_validator(mode="after")
    def _validate_required_fields(self) -> BaseAppSettings:
        # Heroku-style URLs
        if self.DATABASE_URL and self.DATABASE_URL.startswith("postgres://"):
            self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql://", 1)

        if self.ENV.lower() == "prod" and not self.DATABASE_URL:
            raise ValueError("Missing required production settings: DATABASE_URL")
        return self


class DevSettings(BaseAppSettings):
    ENV: str = "dev"
    DATABASE_URL: str = "sqlite:///./storage/dev.db"


class TestSettings(BaseAppSettings):
    ENV: str = "test"
    DATABASE_URL: str = "sqlite:///:memory:"
    STRIPE_SECRET_KEY: str = "sk_test_givingcore"
    STRIPE_WEBHOOK_SECRET: str = "whsec_test_giving"
    PLATFORM_STRIPE_WEBHOOK_SECRET: str = "whsec_test_platform"
    PAYSTACK_SECRET_KEY: str = "sk_test_paystack"
    PLATFORM_PAYSTACK_WEBHOOK_SECRET: str = "sk_test_paystack_platform"
    EVIDENCE_STORAGE_ROOT: str = "storage/test-evidence"
    AUDIT_LOG_FILE: str = "storage/test-audit.log"


class ProdSettings(BaseAppSettings):
    ENV: str = "prod"
    LOG_FORMAT: str = "json"


_ENV_TO_SETTINGS: dict[str, type[BaseAppSettings]] = {
    "dev": DevSettings,
    "development": DevSettings,
    "test": TestSettings,
    "testing": TestSettings,
    "prod": ProdSettings,
    "production": ProdSettings,
}


@lru_cache
def get_settings() -> BaseAppSettings:
    env_name = os.getenv("APP_ENV") or os.getenv("ENV") or "dev"
    settings_cls = _ENV_TO_SETTINGS.get(env_name.lower(), DevSettings)
    return settings_cls()


settings = get_settings()
