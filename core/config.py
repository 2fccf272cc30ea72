from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Collaborator API
    API_BASE_URL: str = Field("http://localhost:5000", description="Base URL of the learning content backend")
    API_TIMEOUT_SECONDS: float = 20.0

    # Redis
    REDIS_URL: str = Field("redis://localhost:6379/0")

    # Snapshot persistence
    SNAPSHOT_KEY_PREFIX: str = "learnloop"
    SNAPSHOT_TTL_SECONDS: int = 3600  # 1 hour

    # Session Settings
    BATCH_SIZE: int = 6
    BATCH_SOURCE: Literal["fixed", "pool"] = Field("fixed", description="fixed: strict batch drawn at start, pool: one item at a time")
    COOLDOWN_SECONDS: int = 300  # 5 minutes
    FLASHCARD_SECONDS: int = 30
    QUIZ_ITEM_SECONDS: int = 60
    FOLLOWUP_SECONDS: int = 60
    RECENT_ITEMS_LIMIT: int = 12

    # Integrity
    MAX_TAB_SWITCHES: int = 2

    # Content selection
    SHOWN_RESET_RETRIES: int = Field(3, description="Bounded number of reset-shown retries before giving up")

    # Host
    TICK_INTERVAL_SECONDS: int = 1
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Environment
    ENV: str = "production"  # development, staging, production
    DEBUG: bool = False

settings = Settings()
