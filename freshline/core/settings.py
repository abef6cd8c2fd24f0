from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from freshline.core.env import load_env


DEFAULT_PAGE_ORIGIN = "http://localhost:8080"
DEFAULT_WS_PATH = "/ws"
DEFAULT_API_PATH = "/api"


@dataclass(frozen=True)
class Settings:
    environment: str  # development, staging, production, test
    ws_url: str
    page_origin: str
    ws_path: str
    api_base_url: str
    api_timeout_seconds: float
    reconnect_interval_seconds: float
    max_reconnect_attempts: int
    keepalive_interval_seconds: float
    keepalive_grace_seconds: float
    open_timeout_seconds: float
    subscribe_channel: str
    cache_ttl_seconds: float
    cache_max_items: int
    search_debounce_seconds: float
    search_min_query_length: int
    search_cache_ttl_seconds: float
    realtime_throttle_seconds: float
    realtime_buffer_size: int
    log_level: str
    log_json: bool
    log_file: str


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


load_env()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = _get_str("ENVIRONMENT", "development").lower()
    if environment not in {"development", "staging", "production", "test"}:
        environment = "development"

    ws_path = _get_str("WS_PATH", DEFAULT_WS_PATH) or DEFAULT_WS_PATH
    if not ws_path.startswith("/"):
        ws_path = f"/{ws_path}"

    log_level = _get_str("LOG_LEVEL", "INFO").upper() or "INFO"

    return Settings(
        environment=environment,
        ws_url=_get_str("WS_URL"),
        page_origin=_get_str("PAGE_ORIGIN", DEFAULT_PAGE_ORIGIN) or DEFAULT_PAGE_ORIGIN,
        ws_path=ws_path,
        api_base_url=_get_str("API_BASE_URL"),
        api_timeout_seconds=_get_float("API_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        reconnect_interval_seconds=_get_float("RECONNECT_INTERVAL_SECONDS", 3.0, minimum=0.0),
        max_reconnect_attempts=_get_int("MAX_RECONNECT_ATTEMPTS", 5, minimum=0),
        keepalive_interval_seconds=_get_float("KEEPALIVE_INTERVAL_SECONDS", 30.0, minimum=0.01),
        keepalive_grace_seconds=_get_float("KEEPALIVE_GRACE_SECONDS", 10.0, minimum=0.01),
        open_timeout_seconds=_get_float("WS_OPEN_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        subscribe_channel=_get_str("SUBSCRIBE_CHANNEL", "call-events") or "call-events",
        cache_ttl_seconds=_get_float("CACHE_TTL_SECONDS", 30.0, minimum=0.0),
        cache_max_items=_get_int("CACHE_MAX_ITEMS", 2048, minimum=1),
        search_debounce_seconds=_get_float("SEARCH_DEBOUNCE_SECONDS", 0.3, minimum=0.001),
        search_min_query_length=_get_int("SEARCH_MIN_QUERY_LENGTH", 2, minimum=0),
        search_cache_ttl_seconds=_get_float("SEARCH_CACHE_TTL_SECONDS", 120.0, minimum=0.0),
        realtime_throttle_seconds=_get_float("REALTIME_THROTTLE_SECONDS", 1.0, minimum=0.001),
        realtime_buffer_size=_get_int("REALTIME_BUFFER_SIZE", 10, minimum=1),
        log_level=log_level,
        log_json=_get_bool("LOG_JSON", default=False),
        log_file=_get_str("LOG_FILE"),
    )


def _split_origin(origin: str):
    parts = urlsplit(origin)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"PAGE_ORIGIN must include scheme and host (got: {origin!r})")
    return parts


def resolve_ws_url(settings: Settings, explicit: Optional[str] = None) -> str:
    """Return the WebSocket endpoint.

    Precedence: explicit argument, ``WS_URL``, then a same-origin URL built
    from ``PAGE_ORIGIN`` (``https`` pages get ``wss``, anything else ``ws``).
    """

    if explicit:
        return explicit
    if settings.ws_url:
        return settings.ws_url
    parts = _split_origin(settings.page_origin)
    scheme = "wss" if parts.scheme.lower() == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, settings.ws_path, "", ""))


def resolve_api_base_url(settings: Settings, explicit: Optional[str] = None) -> str:
    """Return the HTTP base URL of the remote store, without a trailing slash."""

    if explicit:
        return explicit.rstrip("/")
    if settings.api_base_url:
        return settings.api_base_url.rstrip("/")
    parts = _split_origin(settings.page_origin)
    return urlunsplit((parts.scheme, parts.netloc, DEFAULT_API_PATH, "", ""))


__all__ = ["Settings", "get_settings", "resolve_api_base_url", "resolve_ws_url"]
