from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


# -----------------------------
# Tunables / defaults
# -----------------------------

DEFAULT_SCROLL_LIMIT: int = 50
DEFAULT_MAX_NUMBERS: int = 800          # stop early once this many numbers are found
DEFAULT_NAV_RETRIES: int = 3
DEFAULT_NAV_BACKOFF_S: float = 3.0
DEFAULT_NAV_TIMEOUT_MS: int = 120_000
DEFAULT_NAV_WAIT_UNTIL: str = "load"
NAV_WAIT_UNTIL_CHOICES = ("load", "domcontentloaded", "networkidle", "commit")
DEFAULT_POST_NAV_SETTLE_MS: int = 3000
DEFAULT_SCROLL_SETTLE_MS: int = 2500
DEFAULT_EXPAND_SETTLE_MS: int = 1500
DEFAULT_RETENTION_S: float = 60.0
DEFAULT_KEEPALIVE_S: float = 15.0
DEFAULT_SWEEP_INTERVAL_S: float = 5.0
DEFAULT_EVENT_QUEUE_SIZE: int = 1000
DEFAULT_COOKIE_URL: str = "https://www.facebook.com"
DEFAULT_USER_AGENT: str = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def _load_dotenv() -> None:
    if os.getenv("SCRAPER_SKIP_DOTENV") == "1":
        return
    env_name = ".env.production" if os.getenv("SCRAPER_ENV") == "production" else ".env"
    env_path = Path.cwd() / env_name
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return default


def _parse_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return default


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_choice(value: str | None, choices: tuple[str, ...], default: str) -> str:
    normalized = (value or "").strip().lower()
    return normalized if normalized in choices else default


@dataclass(frozen=True)
class Settings:
    default_scroll_limit: int = DEFAULT_SCROLL_LIMIT
    max_numbers: int = DEFAULT_MAX_NUMBERS
    nav_retries: int = DEFAULT_NAV_RETRIES
    nav_backoff_s: float = DEFAULT_NAV_BACKOFF_S
    nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS
    nav_wait_until: str = DEFAULT_NAV_WAIT_UNTIL
    post_nav_settle_ms: int = DEFAULT_POST_NAV_SETTLE_MS
    scroll_settle_ms: int = DEFAULT_SCROLL_SETTLE_MS
    expand_settle_ms: int = DEFAULT_EXPAND_SETTLE_MS
    retention_s: float = DEFAULT_RETENTION_S
    keepalive_s: float = DEFAULT_KEEPALIVE_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S
    event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE
    job_timeout_s: float = 0.0           # 0 disables the overall job deadline
    headless: bool = True
    cookie_url: str = DEFAULT_COOKIE_URL
    user_agent: str = DEFAULT_USER_AGENT
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"


def load_settings() -> Settings:
    _load_dotenv()
    env = os.environ.get

    return Settings(
        default_scroll_limit=max(1, _parse_int(env("SCRAPER_DEFAULT_SCROLL_LIMIT"), DEFAULT_SCROLL_LIMIT)),
        max_numbers=_parse_int(env("SCRAPER_MAX_NUMBERS"), DEFAULT_MAX_NUMBERS),
        nav_retries=max(1, _parse_int(env("SCRAPER_NAV_RETRIES"), DEFAULT_NAV_RETRIES)),
        nav_backoff_s=_parse_float(env("SCRAPER_NAV_BACKOFF_S"), DEFAULT_NAV_BACKOFF_S),
        nav_timeout_ms=_parse_int(env("SCRAPER_NAV_TIMEOUT_MS"), DEFAULT_NAV_TIMEOUT_MS),
        nav_wait_until=_parse_choice(
            env("SCRAPER_NAV_WAIT_UNTIL"), NAV_WAIT_UNTIL_CHOICES, DEFAULT_NAV_WAIT_UNTIL
        ),
        post_nav_settle_ms=_parse_int(env("SCRAPER_POST_NAV_SETTLE_MS"), DEFAULT_POST_NAV_SETTLE_MS),
        scroll_settle_ms=_parse_int(env("SCRAPER_SCROLL_SETTLE_MS"), DEFAULT_SCROLL_SETTLE_MS),
        expand_settle_ms=_parse_int(env("SCRAPER_EXPAND_SETTLE_MS"), DEFAULT_EXPAND_SETTLE_MS),
        retention_s=_parse_float(env("SCRAPER_RETENTION_S"), DEFAULT_RETENTION_S),
        keepalive_s=_parse_float(env("SCRAPER_KEEPALIVE_S"), DEFAULT_KEEPALIVE_S) or DEFAULT_KEEPALIVE_S,
        sweep_interval_s=_parse_float(env("SCRAPER_SWEEP_INTERVAL_S"), DEFAULT_SWEEP_INTERVAL_S)
        or DEFAULT_SWEEP_INTERVAL_S,
        event_queue_size=max(1, _parse_int(env("SCRAPER_EVENT_QUEUE_SIZE"), DEFAULT_EVENT_QUEUE_SIZE)),
        job_timeout_s=_parse_float(env("SCRAPER_JOB_TIMEOUT_S"), 0.0),
        headless=_parse_bool(env("SCRAPER_HEADLESS"), True),
        cookie_url=env("SCRAPER_COOKIE_URL") or DEFAULT_COOKIE_URL,
        user_agent=env("SCRAPER_USER_AGENT") or DEFAULT_USER_AGENT,
        cors_origins=tuple(_split_csv(env("SCRAPER_CORS_ORIGINS", "*"))) or ("*",),
        log_level=(env("SCRAPER_LOG_LEVEL") or "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
