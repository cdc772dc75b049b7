"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _get_list_env(name: str) -> tuple[str, ...]:
    """
    Read a comma-separated list, dropping blank items.
    """

    _load_env_once()
    raw_value = os.getenv(name, "")
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


def _get_int_list_env(name: str) -> tuple[int, ...]:
    """
    Read a comma-separated list of positive integers; invalid or zero items are skipped.
    """

    values: list[int] = []
    for item in _get_list_env(name):
        try:
            parsed = int(item)
        except ValueError:
            continue
        if parsed > 0:
            values.append(parsed)
    return tuple(values)


@dataclass(frozen=True)
class ExternalHTTPSettings:
    """
    Shared HTTP behavior settings for upstream calls.

    ``max_attempts`` counts the first try; backoff before attempt ``n + 1`` is
    ``backoff_initial_seconds * backoff_multiplier ** (n - 1)``.
    """

    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 10.0
    user_agent: str = "catalog-sync/1.0"


@dataclass(frozen=True)
class CatalogAPISettings:
    """
    Upstream catalog service settings.
    """

    base_url: str = "https://app.bragbookgallery.com"
    api_tokens: tuple[str, ...] = ()
    website_property_ids: tuple[int, ...] = ()
    listing_cache_ttl_seconds: int = 0
    site_url: str | None = None


@dataclass(frozen=True)
class SyncSettings:
    """
    Runtime limits and switches for the staged synchronization engine.
    """

    batch_size: int = 50
    time_limit_seconds: float = 240.0
    memory_limit_mb: float = 384.0
    max_listing_pages: int = 100
    lock_ttl_seconds: int = 3600
    delete_orphans: bool = True
    report_upstream: bool = True
    history_size: int = 20


@dataclass(frozen=True)
class TriggerSettings:
    """
    Remote trigger endpoint settings.
    """

    token: str | None = None


@dataclass(frozen=True)
class SchedulerSettings:
    """
    Periodic job settings.
    """

    enabled: bool = True
    resume_interval_minutes: int = 5
    daily_full_sync_hour: int = 3


@lru_cache(maxsize=1)
def get_external_http_settings() -> ExternalHTTPSettings:
    """
    Return shared upstream HTTP settings from environment variables.
    """

    return ExternalHTTPSettings(
        timeout_seconds=max(1.0, _get_float_env("EXTERNAL_HTTP_TIMEOUT_SECONDS", 30.0)),
        max_attempts=max(1, _get_int_env("EXTERNAL_HTTP_MAX_ATTEMPTS", 3)),
        backoff_initial_seconds=max(0.0, _get_float_env("EXTERNAL_HTTP_BACKOFF_INITIAL_SECONDS", 1.0)),
        backoff_multiplier=max(1.0, _get_float_env("EXTERNAL_HTTP_BACKOFF_MULTIPLIER", 2.0)),
        backoff_max_seconds=max(0.0, _get_float_env("EXTERNAL_HTTP_BACKOFF_MAX_SECONDS", 10.0)),
        user_agent=_get_str_env("EXTERNAL_HTTP_USER_AGENT", "catalog-sync/1.0"),
    )


@lru_cache(maxsize=1)
def get_catalog_api_settings() -> CatalogAPISettings:
    """
    Return upstream catalog API settings from environment variables.
    """

    return CatalogAPISettings(
        base_url=_get_str_env("CATALOG_API_BASE_URL", "https://app.bragbookgallery.com").rstrip("/"),
        api_tokens=_get_list_env("CATALOG_API_TOKENS"),
        website_property_ids=_get_int_list_env("CATALOG_WEBSITE_PROPERTY_IDS"),
        listing_cache_ttl_seconds=max(0, _get_int_env("CATALOG_LISTING_CACHE_TTL_SECONDS", 0)),
        site_url=_get_optional_str_env("CATALOG_SITE_URL"),
    )


@lru_cache(maxsize=1)
def get_sync_settings() -> SyncSettings:
    """
    Return sync engine settings from environment variables.
    """

    return SyncSettings(
        batch_size=max(1, _get_int_env("SYNC_BATCH_SIZE", 50)),
        time_limit_seconds=max(1.0, _get_float_env("SYNC_TIME_LIMIT_SECONDS", 240.0)),
        memory_limit_mb=max(16.0, _get_float_env("SYNC_MEMORY_LIMIT_MB", 384.0)),
        max_listing_pages=max(1, _get_int_env("SYNC_MAX_LISTING_PAGES", 100)),
        lock_ttl_seconds=max(60, _get_int_env("SYNC_LOCK_TTL_SECONDS", 3600)),
        delete_orphans=_get_bool_env("SYNC_DELETE_ORPHANS", True),
        report_upstream=_get_bool_env("SYNC_REPORT_UPSTREAM", True),
        history_size=max(1, _get_int_env("SYNC_HISTORY_SIZE", 20)),
    )


@lru_cache(maxsize=1)
def get_trigger_settings() -> TriggerSettings:
    """
    Return remote trigger settings. A missing token disables the trigger endpoints.
    """

    return TriggerSettings(token=_get_optional_str_env("SYNC_TRIGGER_TOKEN"))


@lru_cache(maxsize=1)
def get_scheduler_settings() -> SchedulerSettings:
    """
    Return scheduler settings from environment variables.
    """

    return SchedulerSettings(
        enabled=_get_bool_env("SCHEDULER_ENABLED", True),
        resume_interval_minutes=max(1, _get_int_env("SYNC_RESUME_INTERVAL_MINUTES", 5)),
        daily_full_sync_hour=min(23, max(0, _get_int_env("SYNC_DAILY_HOUR", 3))),
    )
