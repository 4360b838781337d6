"""contentpilot configuration.

Settings are read once from the environment (after `.env` is loaded) and cached.
Tests clear the cache with `get_settings.cache_clear()` after patching env vars.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return int(default)


def _as_float(value: str | None, default: float) -> float:
    try:
        return float(str(value).strip())
    except Exception:
        return float(default)


def _as_path(value: str | None, default: Path) -> Path:
    raw = (value or "").strip()
    return Path(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    db_path: Path
    sqlite_busy_timeout_ms: int

    # Crawl service (Firecrawl-compatible)
    firecrawl_api_key: str
    firecrawl_base_url: str

    # Classification model (any OpenAI-compatible endpoint)
    llm_api_key: str
    llm_base_url: str
    llm_model: str
    classify_excerpt_chars: int

    # Site import
    crawl_page_limit: int
    crawl_poll_interval_sec: float
    crawl_timeout_sec: float
    import_max_categorize: int
    import_classify_delay_sec: float
    import_auto_confirm: bool
    import_lease_seconds: int

    # Batch scrape
    batch_max_concurrency: int
    batch_max_urls: int
    batch_scrape_timeout_sec: float

    # Worker
    worker_poll_sec: float
    worker_heartbeat_sec: int
    refresh_check_sec: float
    refresh_batch_size: int

    log_level: str

    @property
    def crawl_configured(self) -> bool:
        return bool((self.firecrawl_api_key or "").strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    base_dir = Path(__file__).resolve().parents[1]
    load_dotenv(dotenv_path=base_dir / ".env", override=False)

    db_path = _as_path(
        os.getenv("CONTENTPILOT_DATABASE_PATH"), base_dir / ".runtime" / "data" / "contentpilot.db"
    )
    if not db_path.is_absolute():
        db_path = base_dir / db_path

    return Settings(
        base_dir=base_dir,
        db_path=db_path,
        sqlite_busy_timeout_ms=_as_int(os.getenv("CONTENTPILOT_SQLITE_BUSY_TIMEOUT_MS"), 5000),
        firecrawl_api_key=os.getenv("FIRECRAWL_API_KEY", "").strip(),
        firecrawl_base_url=os.getenv("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev/v2").rstrip("/"),
        llm_api_key=os.getenv("LLM_API_KEY", "").strip(),
        llm_base_url=os.getenv("LLM_BASE_URL", "https://integrate.api.nvidia.com/v1").rstrip("/"),
        llm_model=os.getenv("LLM_MODEL", "meta/llama-3.1-70b-instruct"),
        classify_excerpt_chars=max(500, _as_int(os.getenv("CLASSIFY_EXCERPT_CHARS"), 8000)),
        crawl_page_limit=max(1, _as_int(os.getenv("CRAWL_PAGE_LIMIT"), 40)),
        crawl_poll_interval_sec=max(0.0, _as_float(os.getenv("CRAWL_POLL_INTERVAL_SEC"), 5.0)),
        crawl_timeout_sec=max(1.0, _as_float(os.getenv("CRAWL_TIMEOUT_SEC"), 300.0)),
        import_max_categorize=max(1, _as_int(os.getenv("IMPORT_MAX_CATEGORIZE"), 30)),
        import_classify_delay_sec=max(0.0, _as_float(os.getenv("IMPORT_CLASSIFY_DELAY_SEC"), 0.0)),
        import_auto_confirm=_as_bool(os.getenv("IMPORT_AUTO_CONFIRM"), False),
        import_lease_seconds=max(10, _as_int(os.getenv("IMPORT_LEASE_SECONDS"), 120)),
        batch_max_concurrency=max(1, _as_int(os.getenv("BATCH_MAX_CONCURRENCY"), 5)),
        batch_max_urls=max(1, _as_int(os.getenv("BATCH_MAX_URLS"), 30)),
        batch_scrape_timeout_sec=max(1.0, _as_float(os.getenv("BATCH_SCRAPE_TIMEOUT_SEC"), 30.0)),
        worker_poll_sec=max(0.1, _as_float(os.getenv("WORKER_POLL_SEC"), 2.0)),
        worker_heartbeat_sec=max(5, _as_int(os.getenv("WORKER_HEARTBEAT_SEC"), 20)),
        refresh_check_sec=max(1.0, _as_float(os.getenv("REFRESH_CHECK_SEC"), 300.0)),
        refresh_batch_size=max(1, _as_int(os.getenv("REFRESH_BATCH_SIZE"), 20)),
        log_level=(os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper(),
    )
