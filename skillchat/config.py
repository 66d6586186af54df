from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "skillchat"
    # empty -> in-process bus (single worker)
    REDIS_URL: str = ""

    STORE_TIMEOUT_SECONDS: float = 5.0
    READ_RETRY_ATTEMPTS: int = 3
    READ_RETRY_BACKOFF_SECONDS: float = 0.2

    SUBSCRIBER_QUEUE_SIZE: int = 256
    SEQUENCE_GAP_TIMEOUT_SECONDS: float = 10.0
    # idle subscribers re-read the store this often to pick up lost publishes
    SUBSCRIPTION_REFRESH_SECONDS: float = 30.0

    MESSAGE_PREVIEW_LENGTH: int = 200
    MAX_MESSAGE_LENGTH: int = 4000
    PLACEHOLDER_DISPLAY_NAME: str = "User"

    PRESENCE_TTL_SECONDS: int = 60

    FCM_SERVICE_ACCOUNT_FILE: str = ""
    FCM_PROJECT_ID: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
