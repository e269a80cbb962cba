"""
HVAC Crosswalk Matching Engine - Configuration

Loads settings from environment variables with sensible defaults.
"""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Response cache store
    DATABASE_URL: str = Field(
        default=f"sqlite:///{PROJECT_ROOT}/data/crosswalk_cache.db"
    )

    @property
    def project_root(self) -> Path:
        """Return project root directory."""
        return PROJECT_ROOT

    # Application
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_TO_FILE: bool = Field(default=True)
    LOG_DIR: str = Field(default=str(PROJECT_ROOT / "logs"))

    # LLM API (AI-enhanced stage is skipped when the key is empty)
    ANTHROPIC_API_KEY: str = Field(default="")
    AI_MODEL: str = Field(default="claude-sonnet-4-20250514")
    AI_MAX_TOKENS: int = Field(default=800)
    AI_TIMEOUT_SECONDS: float = Field(default=30.0)
    AI_MAX_RETRIES: int = Field(default=3)

    # Web research service (stage is skipped when the URL is empty)
    WEB_RESEARCH_URL: str = Field(default="")
    WEB_RESEARCH_API_KEY: str = Field(default="")
    WEB_RESEARCH_TIMEOUT_SECONDS: float = Field(default=30.0)

    # Matching thresholds
    MIN_CONFIDENCE_THRESHOLD: float = Field(default=0.6)
    FUZZY_MATCH_THRESHOLD: float = Field(default=0.7)
    AI_CONTEXT_SIZE: int = Field(default=20)
    AI_CONFIDENCE_CAP: float = Field(default=0.85)

    # Response cache
    CACHE_TTL_DAYS: int = Field(default=30)
    CACHE_MAX_ENTRIES: int = Field(default=10000)
    CACHE_SWEEP_INTERVAL_HOURS: float = Field(default=24.0)
    CACHE_SCHEMA_VERSION: str = Field(default="1.0")

    # Batch scheduler
    MAX_BATCH_SIZE: int = Field(default=10)
    MAX_CONCURRENT_BATCHES: int = Field(default=3)
    RATE_LIMIT_RPM: int = Field(default=50)
    QUEUE_POLL_INTERVAL_SECONDS: float = Field(default=1.0)
    MAX_EXTERNAL_CALLS_PER_JOB: int = Field(default=0)  # 0 = unlimited
    EVENT_QUEUE_SIZE: int = Field(default=1000)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
