from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _database_path() -> Path:
    override = _env("RECON_DB_PATH")
    if override:
        return Path(override).expanduser().resolve()
    return DATA_DIR / "recon.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_database_path)
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())

    # Generation service
    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "openai"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    embedding_model: str = Field(
        default_factory=lambda: _env("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    llm_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    anthropic_api_key: str = Field(default_factory=lambda: _env("ANTHROPIC_API_KEY"))
    generation_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("GENERATION_TIMEOUT_SECONDS", 60.0)
    )
    generation_max_retries: int = Field(default_factory=lambda: _env_int("GENERATION_MAX_RETRIES", 3))
    generation_backoff_seconds: float = Field(
        default_factory=lambda: _env_float("GENERATION_BACKOFF_SECONDS", 0.5)
    )
    max_prompt_chars: int = Field(default_factory=lambda: _env_int("MAX_PROMPT_CHARS", 24_000))

    # Crawl service
    firecrawl_api_key: str = Field(default_factory=lambda: _env("FIRECRAWL_API_KEY"))
    firecrawl_base_url: str = Field(
        default_factory=lambda: _env("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev")
    )
    user_agent: str = "ReconBot/1.0 (+https://recon.local)"
    request_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("CRAWL_TIMEOUT_SECONDS", 30.0)
    )

    # Pipeline
    extraction_batch_size: int = Field(default_factory=lambda: _env_int("EXTRACTION_BATCH_SIZE", 3))
    extraction_max_text_chars: int = Field(
        default_factory=lambda: _env_int("EXTRACTION_MAX_TEXT_CHARS", 12_000)
    )
    auto_ingest_delay_seconds: float = 1.0

    # Rate limiting
    rate_limit_fail_closed: bool = Field(default_factory=lambda: _env_bool("RATE_LIMIT_FAIL_CLOSED"))
    pipeline_rate_limit: int = Field(default_factory=lambda: _env_int("PIPELINE_RATE_LIMIT", 5))
    auto_ingest_rate_limit: int = Field(default_factory=lambda: _env_int("AUTO_INGEST_RATE_LIMIT", 2))
    embed_rate_limit: int = Field(default_factory=lambda: _env_int("EMBED_RATE_LIMIT", 5))
    rate_limit_window_ms: int = 60_000

    def route_limits(self) -> dict[str, int]:
        """Per-route limits keyed by the prefix before ``:`` in a limiter key."""
        return {
            "pipeline": self.pipeline_rate_limit,
            "auto-ingest": self.auto_ingest_rate_limit,
            "embed": self.embed_rate_limit,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
