"""Admission checks run before any download resource is committed.

The gate owns the per-client fixed-window rate limit table and the URL
policy: scheme and host validation against the supported-domain allow-list,
followed by sanitization of the URL that will be handed to yt-dlp.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

REASON_RATE_LIMITED = "rate_limited"
REASON_INVALID_URL = "invalid_url"
REASON_UNSUPPORTED_DOMAIN = "unsupported_domain"

_ALLOWED_SCHEMES = ("http", "https")

# "&" and "?" stay because query strings need them; the command is always an
# argument vector so they never reach a shell.
_SHELL_METACHARS_RE = re.compile(r"[;|`$<>\\\"'(){}\[\]*!^]")
_CONTROL_OR_SPACE_RE = re.compile(r"[\s\x00-\x1f\x7f]")


@dataclass(frozen=True)
class Admission:
    accepted: bool
    sanitized_url: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, url: str) -> "Admission":
        return cls(accepted=True, sanitized_url=url)

    @classmethod
    def reject(cls, reason: str) -> "Admission":
        return cls(accepted=False, reason=reason)


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by client identity."""

    def __init__(self, max_requests: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._max = max(int(max_requests), 1)
        self._window = float(window_seconds)
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max

    def try_acquire(self, client_id: str) -> bool:
        """Count one request for ``client_id`` unless its window is already full.

        A refused request is not counted, so the counter never exceeds the limit.
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(client_id)
            if window is None or now >= window.reset_at:
                window = RateLimitWindow(count=0, reset_at=now + self._window)
                self._windows[client_id] = window
            if window.count >= self._max:
                return False
            window.count += 1
            return True

    def count(self, client_id: str) -> int:
        now = self._clock()
        with self._lock:
            window = self._windows.get(client_id)
            if window is None or now >= window.reset_at:
                return 0
            return window.count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in stale:
                self._windows.pop(key, None)
        if stale:
            logger.debug("Rate limiter purged %d expired windows", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


def _normalize_domain(value: str) -> str:
    return str(value or "").strip().lower().lstrip(".")


def host_matches(host: str, allowed_domains: Iterable[str]) -> bool:
    host = _normalize_domain(host).rstrip(".")
    if not host:
        return False
    for domain in allowed_domains:
        domain = _normalize_domain(domain)
        if domain and (host == domain or host.endswith("." + domain)):
            return True
    return False


def sanitize_url(raw_url: str, max_length: int) -> str:
    cleaned = _CONTROL_OR_SPACE_RE.sub("", raw_url)
    cleaned = _SHELL_METACHARS_RE.sub("", cleaned)
    return cleaned[:max_length]


def _check_url(url: str, allowed_domains: Iterable[str]) -> Optional[str]:
    """Return a rejection reason for ``url`` or ``None`` when it is acceptable."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
        # Accessing .port validates the netloc's port component.
        parts.port
    except ValueError:
        return REASON_INVALID_URL
    if parts.scheme.lower() not in _ALLOWED_SCHEMES or not host:
        return REASON_INVALID_URL
    if not host_matches(host, allowed_domains):
        return REASON_UNSUPPORTED_DOMAIN
    return None


class RequestGate:
    def __init__(
        self,
        limiter: RateLimiter,
        allowed_domains: Iterable[str],
        *,
        max_url_length: int = 2048,
    ) -> None:
        self.limiter = limiter
        self.allowed_domains = tuple(_normalize_domain(d) for d in allowed_domains if _normalize_domain(d))
        self.max_url_length = int(max_url_length)

    def admit(self, client_id: str, raw_url) -> Admission:
        if not self.limiter.try_acquire(client_id):
            logger.info("Rate limit exceeded client=%s", client_id)
            return Admission.reject(REASON_RATE_LIMITED)

        if not isinstance(raw_url, str) or not raw_url.strip():
            return Admission.reject(REASON_INVALID_URL)
        raw_url = raw_url.strip()
        if len(raw_url) > self.max_url_length:
            return Admission.reject(REASON_INVALID_URL)

        reason = _check_url(raw_url, self.allowed_domains)
        if reason:
            return Admission.reject(reason)

        sanitized = sanitize_url(raw_url, self.max_url_length)
        # Sanitizing must not turn an allowed URL into a different target.
        reason = _check_url(sanitized, self.allowed_domains)
        if reason or urlsplit(sanitized).hostname != urlsplit(raw_url).hostname:
            return Admission.reject(reason or REASON_INVALID_URL)
        return Admission.accept(sanitized)
