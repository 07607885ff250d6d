from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Storage: "mongo" in deployments, "memory" for tests and local runs
    store_backend: str = Field(default="mongo", alias="STORE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="credit_ledger", alias="MONGODB_DB_NAME")
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # Service-to-service calls into /credits/*
    internal_api_token: str = Field(default="", alias="INTERNAL_API_TOKEN")

    # Razorpay
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    payment_currency: str = Field(default="EUR", alias="PAYMENT_CURRENCY")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Bonuses (credits)
    signup_bonus_credits: int = Field(default=3, alias="SIGNUP_BONUS_CREDITS")
    daily_bonus_credits: int = Field(default=2, alias="DAILY_BONUS_CREDITS")
    weekly_streak_bonus_credits: int = Field(default=5, alias="WEEKLY_STREAK_BONUS_CREDITS")

    # Idempotency
    idempotency_ttl_seconds: int = Field(default=24 * 3600, alias="IDEMPOTENCY_TTL_SECONDS")
    idempotency_wait_seconds: float = Field(default=5.0, alias="IDEMPOTENCY_WAIT_SECONDS")
    idempotency_poll_interval_seconds: float = Field(default=0.05, alias="IDEMPOTENCY_POLL_INTERVAL_SECONDS")

    # Out-of-band refund retries
    refund_retry_max_attempts: int = Field(default=5, alias="REFUND_RETRY_MAX_ATTEMPTS")
    refund_retry_batch_size: int = Field(default=50, alias="REFUND_RETRY_BATCH_SIZE")


@lru_cache
def get_settings() -> Settings:
    return Settings()
