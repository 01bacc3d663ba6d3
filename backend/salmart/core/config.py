"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Salmart Chat"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./data/salmart.db"

    # Message rules
    MESSAGE_MAX_TEXT_LENGTH: int = 5000
    NOTIFICATION_PREVIEW_LENGTH: int = 80  # characters, including the trailing "..."
    CURRENCY_SYMBOL: str = "₦"

    # Real-time transport
    ROOM_QUEUE_MAXSIZE: int = 1000  # events buffered per live subscriber
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between heartbeat events
    SSE_RETRY_TIMEOUT: int = 5  # seconds for SSE retry timeout

    # Client reconciliation
    HISTORY_FETCH_MAX_RETRIES: int = 3  # retries after the first attempt
    HISTORY_FETCH_RETRY_DELAY: float = 2.0  # seconds, fixed (no backoff growth)
    CLIENT_REQUEST_TIMEOUT: float = 10.0  # seconds
    PENDING_SEND_RETRY_WINDOW: int = 30  # seconds before an unsynced send is marked failed
    CLIENT_CACHE_DIR: str = "./data/client_cache"

    # CORS - accepts comma-separated string or list
    # Use str type and parse in validator to avoid JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8158"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"
    LOG_MAX_BYTES: int = 5_000_000  # rotate the chat log at ~5 MB
    LOG_BACKUP_COUNT: int = 3
    LOG_QUIET_LOGGERS: str = "uvicorn.access,sqlalchemy.engine,httpx,sse_starlette"

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True


# Singleton instance
settings = Settings()
