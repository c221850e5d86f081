"""Application settings constants and environment-driven overrides."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any

from engine.paths import DOWNLOADS_DIR, LOG_DIR

ENV_PREFIX = "VIDRELAY_"

# Requests admitted per client per window.
RATE_LIMIT_MAX = 10
RATE_LIMIT_WINDOW_SECONDS = 60

# Artifacts older than this are removed by the retention sweep.
FILE_RETENTION_SECONDS = 30 * 60
CLEANUP_INTERVAL_SECONDS = 30 * 60

# Delay between a completed delivery and deletion of the artifact.
DELETE_GRACE_SECONDS = 60

DOWNLOAD_TIMEOUT_SECONDS = 60 * 60

MAX_CONCURRENT_JOBS = 4
MAX_QUEUED_JOBS = 16

MAX_URL_LENGTH = 2048

DELIVERY_MODES = ("stream", "link")

DEFAULT_ALLOWED_DOMAINS = (
    "youtube.com",
    "youtu.be",
    "vimeo.com",
    "dailymotion.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "tiktok.com",
    "facebook.com",
    "fb.watch",
    "reddit.com",
    "twitch.tv",
    "soundcloud.com",
)

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000",)


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8080
    downloads_dir: str = str(DOWNLOADS_DIR)
    log_dir: str = str(LOG_DIR)
    allowed_origins: tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    trust_proxy: bool = False
    rate_limit_max: int = RATE_LIMIT_MAX
    rate_limit_window_seconds: float = RATE_LIMIT_WINDOW_SECONDS
    file_retention_seconds: float = FILE_RETENTION_SECONDS
    cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS
    delete_grace_seconds: float = DELETE_GRACE_SECONDS
    download_timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS
    max_concurrent_jobs: int = MAX_CONCURRENT_JOBS
    max_queued_jobs: int = MAX_QUEUED_JOBS
    max_url_length: int = MAX_URL_LENGTH
    allowed_domains: tuple[str, ...] = DEFAULT_ALLOWED_DOMAINS
    extractor_binary: str | None = None
    cookies_file: str | None = None
    delivery_mode: str = "stream"
    platform_headers: dict[str, dict[str, str]] = field(default_factory=dict)

    def validate(self) -> "Settings":
        if self.rate_limit_max < 1:
            raise ValueError("rate_limit_max must be >= 1")
        for name in (
            "rate_limit_window_seconds",
            "file_retention_seconds",
            "cleanup_interval_seconds",
            "download_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.delete_grace_seconds < 0:
            raise ValueError("delete_grace_seconds must be >= 0")
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        if self.max_queued_jobs < 0:
            raise ValueError("max_queued_jobs must be >= 0")
        if self.max_url_length < 16:
            raise ValueError("max_url_length must be >= 16")
        if self.delivery_mode not in DELIVERY_MODES:
            raise ValueError(f"delivery_mode must be one of {', '.join(DELIVERY_MODES)}")
        if not self.allowed_domains:
            raise ValueError("allowed_domains must not be empty")
        return self


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


_INT_FIELDS = {"port", "rate_limit_max", "max_concurrent_jobs", "max_queued_jobs", "max_url_length"}
_FLOAT_FIELDS = {
    "rate_limit_window_seconds",
    "file_retention_seconds",
    "cleanup_interval_seconds",
    "delete_grace_seconds",
    "download_timeout_seconds",
}
_TUPLE_FIELDS = {"allowed_origins", "allowed_domains"}
_STR_FIELDS = {"host", "downloads_dir", "log_dir", "extractor_binary", "cookies_file", "delivery_mode"}


def _coerce_field(name: str, value: Any) -> Any:
    try:
        if name in _INT_FIELDS:
            return int(value)
        if name in _FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric, got {value!r}") from exc
    if name in _TUPLE_FIELDS:
        if isinstance(value, str):
            return _split_csv(value)
        if isinstance(value, (list, tuple)):
            return tuple(str(item).strip().lower() for item in value if str(item).strip())
        raise ValueError(f"{name} must be a list or comma-separated string")
    if name == "trust_proxy":
        return _coerce_bool(value)
    if name == "platform_headers":
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, dict):
            raise ValueError("platform_headers must be an object")
        return {str(k).lower(): {str(h): str(v) for h, v in (hdrs or {}).items()} for k, hdrs in value.items()}
    if name in _STR_FIELDS:
        text = str(value).strip()
        if name in {"extractor_binary", "cookies_file"} and not text:
            return None
        return text
    raise ValueError(f"unknown setting: {name}")


def _field_names() -> set[str]:
    return set(Settings.__dataclass_fields__)


def load_settings(environ=None) -> Settings:
    """Build settings from defaults, an optional JSON file, then ``VIDRELAY_*`` env vars.

    Environment variables win over the JSON file. ``PORT`` is honored as a
    fallback for ``VIDRELAY_PORT`` so platform-assigned ports work unchanged.
    """
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    config_path = env.get(f"{ENV_PREFIX}CONFIG")
    if config_path:
        file_config = load_config(config_path)
        if not isinstance(file_config, dict):
            raise ValueError("config file must contain a JSON object")
        for key, value in file_config.items():
            if key not in _field_names():
                raise ValueError(f"unknown setting in config file: {key}")
            overrides[key] = _coerce_field(key, value)

    if env.get("PORT"):
        overrides["port"] = _coerce_field("port", env["PORT"])
    for name in _field_names():
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None or raw == "":
            continue
        overrides[name] = _coerce_field(name, raw)

    return replace(Settings(), **overrides).validate()
