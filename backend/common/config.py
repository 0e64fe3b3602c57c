from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

STORAGE_BACKENDS = ("memory", "sql")
DEFAULT_POLL_TIMEOUT_SECONDS = 20


class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8080
    LOG_LEVEL: str = "INFO"
    SHUTDOWN_TIMEOUT_SECONDS: int = 5

    # Storage
    STORAGE: str = "memory"  # memory|sql
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/tasks.db"

    # Telegram long polling
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_POLL_TIMEOUT_SECONDS: int = DEFAULT_POLL_TIMEOUT_SECONDS
    TELEGRAM_RETRY_INTERVAL_SECONDS: float = 2.0
    TELEGRAM_HTTP_TIMEOUT_SECONDS: float = 70.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def storage_backend(self) -> str:
        backend = (self.STORAGE or "").strip().lower()
        if backend not in STORAGE_BACKENDS:
            return "memory"
        return backend

    @property
    def telegram_enabled(self) -> bool:
        return bool((self.TELEGRAM_BOT_TOKEN or "").strip())

settings = Settings()
