from __future__ import annotations

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    TELEGRAM_API_ID: int
    TELEGRAM_API_HASH: str

    BACKEND_URL: str = Field(
        validation_alias=AliasChoices("BACKEND_URL", "SUPABASE_URL")
    )
    BACKEND_ANON_KEY: str = Field(
        validation_alias=AliasChoices("BACKEND_ANON_KEY", "SUPABASE_ANON_KEY")
    )
    SYNC_SECRET: str = Field(
        validation_alias=AliasChoices("SYNC_SECRET", "TELEGRAM_SYNC_SECRET")
    )

    INGEST_PATH: str = "/functions/v1/telegram-mtproto-sync"
    ASSET_PATH: str = "/functions/v1/upload-telegram-media"
    ROSTER_PATH: str = "/functions/v1/telegram-bots-list"

    REQUEST_TIMEOUT_SEC: float = 30.0
    HTTP_MAX_CONNECTIONS: int = 20

    DELIVERY_MAX_CONCURRENT: int = 3
    DELIVERY_MAX_QUEUE_SIZE: int = 1000
    DELIVERY_DISPATCH_INTERVAL_SEC: float = 0.1

    RETRY_MAX_RETRIES: int = 5
    RETRY_BASE_DELAY_SEC: float = 1.0
    RETRY_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_SEC: float = 30.0

    HEALTH_PROBE_INTERVAL_SEC: float = 30.0
    PHOTO_CACHE_TTL_SEC: float = 3600.0
    PROFILE_PHOTOS_ENABLED: bool = True

    CONNECT_PACING_SEC: float = 1.0
    CLIENT_CONNECTION_RETRIES: int = 5
    CLIENT_RETRY_DELAY_SEC: int = 1
    SHUTDOWN_DRAIN_TIMEOUT_SEC: float = 10.0


settings = Settings()
