"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    APP_NAME: str = "MedCure Notifications"

    DATABASE_URL: str = "postgresql+psycopg://postgres@localhost:5432/medcure"
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: str = "http://localhost:5173"
    FRONTEND_BASE_URL: str = "http://localhost:5173"
    AUTOMATION_SECRET: str = ""

    # procedure | orm | memory
    ADMISSION_BACKEND: str = "procedure"

    NOTIFICATION_CACHE_TTL_SECONDS: int = 30
    NOTIFICATION_CACHE_SWEEP_SECONDS: int = 60

    HEALTH_CHECK_INTERVAL_MINUTES: int = 15
    HEALTH_SWEEP_LOOP_ENABLED: bool = False
    HEALTH_SWEEP_LOOP_SECONDS: int = 300
    EXPIRY_WARNING_DAYS: int = 30
    EXPIRY_CRITICAL_DAYS: int = 7

    DEDUP_RETENTION_DAYS: int = 90
    DISMISSED_RETENTION_DAYS: int = 30

    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_TLS: bool = True

    EMAIL_QUEUE_MAX_SIZE: int = 500
    EMAIL_MAX_ATTEMPTS: int = 3
    EMAIL_RETRY_DELAY_SECONDS: float = 2.0

    model_config = SettingsConfigDict(env_file=str(BASE_DIR / ".env"), env_file_encoding="utf-8")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
