"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

AUTH_MODES = {"key", "signed"}
NAP_MATCH_MODES = {"exact", "normalized"}


class ConfigError(RuntimeError):
    """Raised when configuration is present but unusable."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    brightlocal_api_key: str = ""
    brightlocal_api_secret: Optional[str] = None
    brightlocal_auth_mode: str = "key"
    default_category_id: str = "605"
    cron_secret: Optional[str] = None
    worker_port: int = 8080
    map_batch_size: int = 10
    pull_batch_size: int = 10
    campaign_batch_size: int = 5
    time_budget_seconds: float = 110.0
    stale_audit_hours: float = 0.0
    nap_match_mode: str = "exact"

    @property
    def brightlocal_configured(self) -> bool:
        return bool(self.brightlocal_api_key)


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s", name, raw, default)
        return default
    return max(minimum, value)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(0.0, float(raw.strip()))
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    api_key = os.getenv("BRIGHTLOCAL_API_KEY", "")
    api_secret = os.getenv("BRIGHTLOCAL_API_SECRET") or None
    auth_mode = os.getenv("BRIGHTLOCAL_AUTH_MODE", "key").strip().lower()
    default_category_id = os.getenv("BRIGHTLOCAL_DEFAULT_CATEGORY_ID", "605").strip() or "605"
    cron_secret = os.getenv("CRON_SECRET") or None
    worker_port = _int_env("PORT", _int_env("WORKER_PORT", 8080))
    nap_match_mode = os.getenv("NAP_MATCH_MODE", "exact").strip().lower()

    if auth_mode not in AUTH_MODES:
        raise ConfigError(f"BRIGHTLOCAL_AUTH_MODE must be one of {sorted(AUTH_MODES)}, got {auth_mode!r}")
    if auth_mode == "signed" and not api_secret:
        raise ConfigError("BRIGHTLOCAL_API_SECRET is required when BRIGHTLOCAL_AUTH_MODE=signed")
    if nap_match_mode not in NAP_MATCH_MODES:
        raise ConfigError(f"NAP_MATCH_MODE must be one of {sorted(NAP_MATCH_MODES)}, got {nap_match_mode!r}")

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not api_key:
        logger.warning("BRIGHTLOCAL_API_KEY is not configured; citation sync will be skipped.")
    if not cron_secret:
        logger.warning("CRON_SECRET is not configured; scheduler endpoints are unauthenticated.")

    return Settings(
        database_url=database_url,
        brightlocal_api_key=api_key,
        brightlocal_api_secret=api_secret,
        brightlocal_auth_mode=auth_mode,
        default_category_id=default_category_id,
        cron_secret=cron_secret,
        worker_port=worker_port,
        map_batch_size=_int_env("MAP_BATCH_SIZE", 10),
        pull_batch_size=_int_env("PULL_BATCH_SIZE", 10),
        campaign_batch_size=_int_env("CAMPAIGN_BATCH_SIZE", 5),
        time_budget_seconds=_float_env("SYNC_TIME_BUDGET_SECONDS", 110.0),
        stale_audit_hours=_float_env("STALE_AUDIT_HOURS", 0.0),
        nap_match_mode=nap_match_mode,
    )
