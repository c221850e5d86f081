"""Streaming delivery of finished artifacts to HTTP clients."""

from __future__ import annotations

import logging
import mimetypes
import os
import re
import threading
import unicodedata
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote

import anyio
from fastapi.responses import StreamingResponse

from engine.errors import ArtifactNotFound, DeliveryFailed, ServiceBusy
from engine.log_utils import log_event
from engine.registry import ArtifactRegistry

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

for _ext, _type in ((".mp4", "video/mp4"), (".m4a", "audio/mp4"), (".webm", "video/webm"), (".mkv", "video/x-matroska")):
    mimetypes.add_type(_type, _ext)

_UNSAFE_ASCII_RE = re.compile(r'[\x00-\x1f\x7f"\\/;]')


def ascii_filename(name: str) -> str:
    normalized = unicodedata.normalize("NFKD", name or "")
    ascii_name = normalized.encode("ascii", "ignore").decode("ascii")
    cleaned = _UNSAFE_ASCII_RE.sub("_", ascii_name).strip().strip(".")
    return cleaned or "download"


def content_disposition(name: str) -> str:
    """Build an attachment header carrying both ASCII and RFC 5987 UTF-8 names."""
    return f"attachment; filename=\"{ascii_filename(name)}\"; filename*=UTF-8''{quote(name, safe='')}"


def guess_media_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


class Delivery:
    """One open artifact being sent to one client.

    Holds a registry reference from ``DeliveryStreamer.open`` until ``close``;
    ``close`` is idempotent and runs whether the stream completed, failed or
    the client went away.
    """

    def __init__(self, streamer: "DeliveryStreamer", path: str, download_name: str, size: int, handle, first_chunk: bytes):
        self.path = path
        self.download_name = download_name
        self.size = size
        self.media_type = guess_media_type(download_name)
        self.bytes_sent = 0
        self.completed = False
        self._streamer = streamer
        self._handle = handle
        self._first_chunk = first_chunk
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Disposition": content_disposition(self.download_name),
            "Content-Length": str(self.size),
        }

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        chunk_size = self._streamer.chunk_size
        try:
            chunk = self._first_chunk
            self._first_chunk = b""
            while chunk:
                yield chunk
                self.bytes_sent += len(chunk)
                chunk = await anyio.to_thread.run_sync(self._handle.read, chunk_size)
            self.completed = True
        except OSError:
            logger.exception("Delivery stream failed path=%s sent=%d", self.path, self.bytes_sent)
            raise
        finally:
            self.close()

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._handle.close()
        except OSError:
            logger.warning("Failed to close %s", self.path)
        self._streamer._finished(self)

    def response(self) -> StreamingResponse:
        return ArtifactResponse(self)


class ArtifactResponse(StreamingResponse):
    def __init__(self, delivery: Delivery) -> None:
        super().__init__(
            delivery.iter_chunks(),
            media_type=delivery.media_type,
            headers=delivery.headers,
        )
        self.delivery = delivery

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Covers disconnects where the body iterator is abandoned mid-stream.
            self.delivery.close()


class DeliveryStreamer:
    def __init__(
        self,
        registry: ArtifactRegistry,
        schedule_delete: Callable[[str], None],
        *,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.registry = registry
        self.schedule_delete = schedule_delete
        self.chunk_size = int(chunk_size)
        self._streaming: set[str] = set()
        self._lock = threading.Lock()

    async def open(self, path: str, download_name: Optional[str] = None) -> Delivery:
        """Claim ``path`` for one stream and read its first chunk.

        Raises ``ArtifactNotFound`` when the file is missing, ``ServiceBusy``
        when another stream already holds it, and ``DeliveryFailed`` when it
        cannot be read before any bytes have been committed.
        """
        path = os.path.abspath(path)
        with self._lock:
            if path in self._streaming:
                raise ServiceBusy("File is already being downloaded")
            self._streaming.add(path)
        self.registry.mark_in_use(path)
        try:
            try:
                size = os.path.getsize(path)
                handle = open(path, "rb")
            except FileNotFoundError as exc:
                raise ArtifactNotFound() from exc
            except OSError as exc:
                logger.error("Cannot open artifact %s: %s", path, exc)
                raise DeliveryFailed() from exc
            try:
                first_chunk = await anyio.to_thread.run_sync(handle.read, self.chunk_size)
            except OSError as exc:
                handle.close()
                logger.error("Cannot read artifact %s: %s", path, exc)
                raise DeliveryFailed() from exc
        except BaseException:
            self._release(path)
            raise
        delivery = Delivery(self, path, download_name or os.path.basename(path), size, handle, first_chunk)
        log_event(logging.INFO, "delivery_started", path=os.path.basename(path), size=size)
        return delivery

    def _release(self, path: str) -> None:
        self.registry.release(path)
        with self._lock:
            self._streaming.discard(path)

    def _finished(self, delivery: Delivery) -> None:
        self._release(delivery.path)
        if delivery.completed:
            log_event(
                logging.INFO,
                "delivery_complete",
                path=os.path.basename(delivery.path),
                bytes_sent=delivery.bytes_sent,
            )
            try:
                self.schedule_delete(delivery.path)
            except Exception:
                logger.exception("Failed to schedule deletion of %s", delivery.path)
        else:
            log_event(
                logging.WARNING,
                "delivery_incomplete",
                path=os.path.basename(delivery.path),
                bytes_sent=delivery.bytes_sent,
                size=delivery.size,
            )
