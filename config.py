import os
import socket
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_ms(name: str, default_ms: int) -> float:
    """Read a millisecond duration and return it in seconds."""
    return max(0, _env_int(name, default_ms)) / 1000.0


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class Settings:
    """Runtime configuration for the scoring service."""

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://openrouter.ai/api/v1"
    openai_model: str = "openai/gpt-4o-mini"

    database_url: str = "sqlite+aiosqlite:///./lead_jobs.db"
    redis_url: Optional[str] = None

    max_concurrency: int = 5
    lookup_max_concurrency: int = 2
    lookup_min_delay: float = 0.75
    lookup_base_backoff: float = 2.0
    lookup_max_backoff: float = 60.0
    lookup_backoff_reset: float = 120.0

    maps_timeout: float = 15.0
    maps_cache_ttl: float = 900.0
    maps_headless: bool = False

    job_stale_after: float = 60.0
    score_batch_size: int = 5
    score_flush_delay: float = 0.05
    ai_cleaner_enabled: bool = False

    worker_enabled: bool = True
    worker_poll_interval: float = 2.0
    worker_id: str = field(default_factory=_default_worker_id)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        min_delay = _env_ms("MAPS_LOOKUP_MIN_DELAY_MS", 750)
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or os.getenv("OPENROUTER_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1"),
            openai_model=os.getenv("OPENAI_MODEL", "openai/gpt-4o-mini"),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./lead_jobs.db"),
            redis_url=os.getenv("REDIS_URL") or None,
            max_concurrency=max(1, _env_int("MAX_CONCURRENCY", 5)),
            lookup_max_concurrency=max(1, _env_int("MAPS_LOOKUP_MAX_CONCURRENCY", 2)),
            lookup_min_delay=min_delay,
            lookup_base_backoff=max(0.001, _env_ms("MAPS_LOOKUP_BASE_BACKOFF_MS", 2000)),
            lookup_max_backoff=max(0.001, _env_ms("MAPS_LOOKUP_MAX_BACKOFF_MS", 60000)),
            lookup_backoff_reset=max(_env_ms("MAPS_LOOKUP_BACKOFF_RESET_MS", 120000), min_delay),
            maps_timeout=_env_ms("MAPS_TIMEOUT_MS", 15000) or 15.0,
            maps_cache_ttl=_env_ms("MAPS_CACHE_TTL_MS", 900000),
            maps_headless=_env_bool("MAPS_HEADLESS", False),
            job_stale_after=_env_ms("LEAD_JOB_STALE_MS", 60000) or 60.0,
            score_batch_size=max(1, _env_int("SCORE_BATCH_SIZE", 5)),
            score_flush_delay=_env_ms("SCORE_FLUSH_DELAY_MS", 50),
            ai_cleaner_enabled=_env_bool("AI_CLEANER_ENABLED", False),
            worker_enabled=_env_bool("WORKER_ENABLED", True),
            worker_poll_interval=_env_ms("WORKER_POLL_INTERVAL_MS", 2000) or 2.0,
            worker_id=os.getenv("WORKER_ID") or _default_worker_id(),
        )

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver selected."""
        url = self.database_url
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        if url.startswith("postgresql://"):
            return "postgresql+asyncpg://" + url[len("postgresql://"):]
        if url.startswith("sqlite://") and not url.startswith("sqlite+"):
            return "sqlite+aiosqlite://" + url[len("sqlite://"):]
        return url
