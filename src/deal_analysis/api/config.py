"""Configuration for the deal analysis FastAPI service."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # OpenAI
    OPENAI_API_KEY: str
    OPENAI_CHAT_MODEL: str = "gpt-4.1-mini"

    # Postgres; the in-memory store is used when unset
    DATABASE_URL: str | None = None

    # Background worker
    RUN_WORKER: bool = True
    POLL_INTERVAL_SECONDS: float = 5.0
    MAX_CONCURRENT_RUNS: int = 10

    # Auth
    WORKER_API_KEY: str


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
