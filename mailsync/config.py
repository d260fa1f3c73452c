from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage settings
    DATABASE_URL: str = "postgresql://localhost:5432/mailsync"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Gmail OAuth settings
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    # Gmail push notifications (Pub/Sub topic used by users.watch)
    GMAIL_PUBSUB_TOPIC: str | None = None

    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # SYNC SETTINGS
    # =================================================================
    HISTORY_MAX_PAGES: int = 10_000  # Safety bound for the history page loop
    FULL_SYNC_MAX_RESULTS: int = 100  # Most recent messages backfilled on resync
    FETCH_MESSAGE_ATTEMPTS: int = 3
    TOKEN_REFRESH_BUFFER_MINUTES: int = 5

    # Worker / queue
    QUEUE_NAME: str = "gmail-sync"
    WORKER_CONCURRENCY: int = 10
    WORKER_POLL_INTERVAL: float = 1.0  # seconds
    JOB_VISIBILITY_TIMEOUT: int = 300  # seconds before an unacked job is redelivered

    # Scheduling
    SCHEDULED_SYNC_INTERVAL_MINUTES: int = 15
    WATCH_RENEWAL_HOURS_AHEAD: int = 24
    NOTIFICATION_DEDUPE_TTL_SECONDS: int = 3600

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
