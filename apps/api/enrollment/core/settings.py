from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    ENROLLMENT_ENV: str = "development"
    ENROLLMENT_MODE: str = "api"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    API_CORS_ORIGINS: str = "http://localhost:3000"
    SUPABASE_URL: str
    SUPABASE_ANON_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_ISSUER: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    SUPABASE_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_WEBHOOK_SECRET: str | None = None
    CHECKOUT_BASE_URL: str = "http://localhost:3000"
    CHECKOUT_LINK_TTL_HOURS: int = 24
    CHECKOUT_LINK_RETENTION_DAYS: int = 7
    REGISTRY_ADHERENCE_URL: str | None = None
    REGISTRY_CANCELLATION_URL: str | None = None
    REGISTRY_API_KEY: str | None = None
    REGISTRY_CLIENT_ID: int | None = None
    REGISTRY_CONTRACT_ID: int | None = None
    REGISTRY_DEFAULT_PLAN_CODE: int = 102303
    REGISTRY_MAX_ATTEMPTS: int = 3
    REGISTRY_BACKOFF_BASE_SECONDS: float = 1.0
    REGISTRY_TIMEOUT_SECONDS: float = 10.0
    REDRIVE_INTERVAL_SECONDS: int = 300
    REDRIVE_BATCH_LIMIT: int = 20
    REDRIVE_MAX_REGISTRY_ATTEMPTS: int = 9
    REDRIVE_STALE_AFTER_SECONDS: int = 900

    @model_validator(mode="after")
    def apply_supabase_defaults(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_ANON_KEY.strip():
            raise ValueError("SUPABASE_ANON_KEY must be configured")

        if not self.SUPABASE_ISSUER:
            self.SUPABASE_ISSUER = f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"
        if not self.SUPABASE_JWKS_URL:
            self.SUPABASE_JWKS_URL = (
                f"{self.SUPABASE_ISSUER.rstrip('/')}/.well-known/jwks.json"
            )
        if self.REGISTRY_MAX_ATTEMPTS < 1:
            raise ValueError("REGISTRY_MAX_ATTEMPTS must be at least 1")
        if self.CHECKOUT_LINK_TTL_HOURS < 1:
            raise ValueError("CHECKOUT_LINK_TTL_HOURS must be at least 1")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.API_CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def webhook_secret(self) -> str | None:
        secret = (self.PAYMENT_WEBHOOK_SECRET or "").strip()
        return secret or None

    @property
    def is_production(self) -> bool:
        return self.ENROLLMENT_ENV.strip().lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
