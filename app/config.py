from pydantic_settings import BaseSettings
from dotenv import load_dotenv
from typing import Optional

load_dotenv()

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./notifications.db"
    SQL_ECHO: bool = False
    USER_MANAGEMENT_URL: str = "http://localhost:8001"
    JWT_SECRET: str = "change-me"
    ALGORITHM: str = "HS256"
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # AWS credentials shared by the SES email and SNS SMS providers
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION_NAME: str = "us-east-1"

    # Fernet secret for admin settings stored with is_encrypted = true
    SETTINGS_ENCRYPTION_KEY: str = "change-me"

    PROCESSOR_ENABLED: bool = True
    PROCESSOR_INTERVAL_SECONDS: int = 30
    PROCESSOR_START_DELAY_SECONDS: int = 5
    PROCESSOR_BATCH_SIZE: int = 50
    PROCESSOR_CONCURRENCY: int = 1
    SEND_TIMEOUT_SECONDS: int = 60
    STALE_CLAIM_MINUTES: int = 10
    RETENTION_DAYS: int = 30

    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    WEBHOOK_RATE_LIMIT_DEFAULT: int = 30
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60
    WEBHOOK_USER_AGENT: str = "Notification-Dispatcher-Webhook/1.0"

    API_RATE_LIMIT_TIMES: int = 10
    API_RATE_LIMIT_SECONDS: int = 60

    FRONTEND_URL: str = "http://localhost:3000"
    APP_NAME: str = "Notification Dispatcher"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    class Config:
        env_file = ".env"

settings = Settings()
