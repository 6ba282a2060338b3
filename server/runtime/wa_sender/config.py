"""
WA Sender Runtime - Configuration Management

Loads configuration from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "WA Sender Runtime"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Database (MySQL/MariaDB, only used by the database credential backend)
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_NAME: str = "wa_sender"
    DB_USER: str = "wa_sender"
    DB_PASSWORD: str = "wa_sender"
    DATABASE_URL: Optional[str] = None

    # Credentials
    CREDENTIAL_BACKEND: str = "file"  # 'file' or 'database'
    AUTH_DIR: str = "auth"
    DEVICE_ID: str = "default"

    # Messaging bridge
    BRIDGE_URL: str = "ws://localhost:8420/wa"
    API_SECRET: str = "change-me-now"
    CONNECT_TIMEOUT_SECONDS: float = 60.0
    PAIRING_TIMEOUT_SECONDS: float = 60.0
    SEND_TIMEOUT_SECONDS: float = 60.0
    RECONNECT_BASE_DELAY_SECONDS: float = 2.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0

    # Delivery queue
    QUEUE_PAUSE_SECONDS: float = 10.0
    RETRY_BACKOFF_SECONDS: float = 5.0
    DEFAULT_MESSAGE_DELAY: int = 1
    DEFAULT_MAX_RETRIES: int = 3

    # Security
    ALLOWED_HOSTS: List[str] = ["*"]
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def database_url(self) -> str:
        """Explicit DATABASE_URL, or the MySQL URL built from DB_* settings"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+pymysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?charset=utf8mb4"
        )


settings = Settings()
