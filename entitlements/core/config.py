from typing import Dict, List, Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Transient failure handling (serialization conflicts, lock timeouts)
    DB_TRANSACTION_ATTEMPTS: int = 3
    DB_RETRY_BACKOFF_MS: int = 50

    # Entitlement defaults
    DEFAULT_QUOTA: str = "personal_workspace"
    PLAN_QUOTAS: Dict[str, str] = {
        "pro": "team_workspace",
        "lifetime": "team_workspace",
    }
    PLAN_FEATURES: Dict[str, List[str]] = {
        "ai": ["unlimited_copilot"],
    }

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
