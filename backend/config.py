"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # API Keys
    anthropic_api_key: str = ""

    # Postgres
    database_url: str = ""

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # LLM Settings
    claude_model: str = "claude-sonnet-4-20250514"
    completion_max_tokens: int = 300
    completion_temperature: float = 0.7
    completion_timeout: float = 30.0  # seconds, failures go to the fallback text

    # Retrieval Settings
    retrieval_policy: str = "filtered"  # "filtered" or "all"
    retrieval_threshold: float = 0.01
    retrieval_limit: int = 5
    diversity_bonus: float = 0.05

    # Confidence Settings
    confidence_threshold: float = 0.7

    # Conversation context attached to unanswered questions
    history_window: int = 5

    class Config:
        env_file = "../.env"  # Project root .env
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
