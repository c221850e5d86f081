"""Reference counts for artifacts that are being produced or streamed."""

from __future__ import annotations

import logging
import os
import threading

from engine.paths import artifact_stem

logger = logging.getLogger(__name__)


def _key(path) -> str:
    return os.path.abspath(str(path))


class ArtifactRegistry:
    """Tracks, per output path, how many consumers currently hold the file.

    The producer holds one reference while yt-dlp runs and each delivery stream
    holds one while sending. ``is_in_use`` is also true for intermediates
    yt-dlp writes next to a held artifact (``dl_<id>.mp4.part``,
    ``dl_<id>.f137.mp4``), since they share its stem.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._stems: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _stem_key(key: str) -> tuple[str, str]:
        return os.path.dirname(key), artifact_stem(key)

    def mark_in_use(self, path) -> int:
        key = _key(path)
        stem_key = self._stem_key(key)
        with self._lock:
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
            self._stems[stem_key] = self._stems.get(stem_key, 0) + 1
        return count

    def release(self, path) -> int:
        key = _key(path)
        stem_key = self._stem_key(key)
        with self._lock:
            count = self._counts.get(key)
            if not count:
                logger.warning("Release of unregistered artifact %s ignored", key)
                return 0
            count -= 1
            if count:
                self._counts[key] = count
            else:
                self._counts.pop(key, None)
            remaining = self._stems.get(stem_key, 0) - 1
            if remaining > 0:
                self._stems[stem_key] = remaining
            else:
                self._stems.pop(stem_key, None)
        return count

    def is_in_use(self, path) -> bool:
        key = _key(path)
        with self._lock:
            if self._counts.get(key):
                return True
            return self._stem_key(key) in self._stems

    def count(self, path) -> int:
        with self._lock:
            return self._counts.get(_key(path), 0)

    def active_count(self) -> int:
        with self._lock:
            return len(self._counts)
