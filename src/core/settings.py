"""Application settings and lazy settings loader."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Defaults run everything in one process with the in-memory task store; set
    TASK_STORE=mongo and TASK_RUNNER=rq for a durable, worker-backed deployment.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "env.example"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"

    # Capability adapters
    GOOGLE_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.5-flash"
    # Tried after GEMINI_MODEL has used up its attempts; empty disables the fallback.
    GEMINI_FALLBACK_MODEL: str | None = "gemini-2.5-flash-lite"
    TAVILY_API_KEY: str | None = None
    SEARCH_DEPTH: str = "advanced"
    ADAPTER_MAX_ATTEMPTS: int = 2

    # Task storage and execution
    TASK_STORE: Literal["memory", "mongo"] = "memory"
    MONGODB_URL: str | None = None
    MONGODB_DATABASE: str = "deep_research"
    TASK_RUNNER: Literal["inline", "rq"] = "inline"
    REDIS_URL: str | None = None
    RQ_QUEUE_NAME: str = "research_tasks"

    # Pipeline depth per mode
    HEAVY_SEARCH_CONCURRENCY: int = 3
    QUICK_MAX_QUESTIONS: int = 4
    HEAVY_MAX_QUESTIONS: int = 7
    QUICK_RESULTS_PER_QUESTION: int = 3
    HEAVY_RESULTS_PER_QUESTION: int = 6

    # Push status stream
    STATUS_STREAM_INTERVAL_S: float = 0.5

    # API security
    API_KEY: str | None = None
    API_KEY_HEADER: str = "X-API-Key"

    def validate_backends(self) -> None:
        """Reject store/runner combinations that cannot work."""
        if self.TASK_STORE == "mongo" and not self.MONGODB_URL:
            raise RuntimeError("TASK_STORE=mongo requires MONGODB_URL")
        if self.TASK_RUNNER == "rq":
            if not self.REDIS_URL:
                raise RuntimeError("TASK_RUNNER=rq requires REDIS_URL")
            if self.TASK_STORE != "mongo":
                # Workers run in other processes and cannot see process-local tasks.
                raise RuntimeError("TASK_RUNNER=rq requires TASK_STORE=mongo")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance (lazy-loaded)."""
    return Settings()
