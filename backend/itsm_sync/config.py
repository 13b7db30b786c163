from __future__ import annotations

import os

APP_VERSION = "1.4.0"

_DEFAULT_SECRET_KEYS = ("change-me-in-production", "dev-secret-key-change-in-production")


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    PROJECT_NAME: str = "ITSM Sync"
    API_V1_PREFIX: str = "/api/v1"

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: str = os.getenv("POSTGRES_PORT", "5432")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "itsmsync")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "itsmsync")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "itsmsync")

    RESET_DB: bool = _env_bool("RESET_DB")

    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")
    ALLOWED_ORIGINS: list[str] = [
        o.strip()
        for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
        if o.strip()
    ]

    # Tenancy: single-tenant deployments never send an organization claim
    DEFAULT_ORGANIZATION_ID: str = os.getenv("DEFAULT_ORGANIZATION_ID", "default")

    # Outbound queue worker
    SYNC_WORKER_ENABLED: bool = _env_bool("SYNC_WORKER_ENABLED", "true")
    SYNC_WORKER_CONCURRENCY: int = int(os.getenv("SYNC_WORKER_CONCURRENCY", "4"))
    SYNC_POLL_INTERVAL_SECONDS: float = float(os.getenv("SYNC_POLL_INTERVAL_SECONDS", "2.0"))
    SYNC_BATCH_SIZE: int = int(os.getenv("SYNC_BATCH_SIZE", "50"))
    SYNC_MAX_ATTEMPTS: int = int(os.getenv("SYNC_MAX_ATTEMPTS", "3"))
    SYNC_CLAIM_LEASE_SECONDS: int = int(os.getenv("SYNC_CLAIM_LEASE_SECONDS", "600"))
    ADAPTER_TIMEOUT_SECONDS: float = float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "30"))
    SYNC_USER_EMAIL: str = os.getenv("SYNC_USER_EMAIL", "system@itsm-sync.local")

    # Inbound webhooks (empty secret disables signature checks)
    WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "")
    WEBHOOK_ACK_ENABLED: bool = _env_bool("WEBHOOK_ACK_ENABLED", "true")
    WEBHOOK_RATE_LIMIT: str = os.getenv("WEBHOOK_RATE_LIMIT", "120/minute")
    WEBHOOK_USER_EMAIL: str = os.getenv("WEBHOOK_USER_EMAIL", "webhook@itsm-sync.local")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


settings = Settings()
