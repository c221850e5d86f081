from __future__ import annotations

import asyncio

import pytest

from engine.delivery import DeliveryStreamer, ascii_filename, content_disposition
from engine.errors import ArtifactNotFound, DeliveryFailed, ServiceBusy
from engine.registry import ArtifactRegistry


def _streamer(registry, scheduled, chunk_size=1024):
    return DeliveryStreamer(registry, scheduled.append, chunk_size=chunk_size)


async def _drain(delivery) -> bytes:
    body = b""
    async for chunk in delivery.iter_chunks():
        body += chunk
    return body


def test_content_disposition_carries_ascii_and_utf8_names() -> None:
    header = content_disposition("Café vidéo.mp4")

    assert header.startswith('attachment; filename="Cafe video.mp4"')
    assert "filename*=UTF-8''Caf%C3%A9%20vid%C3%A9o.mp4" in header


def test_ascii_filename_never_empty() -> None:
    assert ascii_filename("日本語") == "download"
    assert ascii_filename('a"b;c.mp4') == "a_b_c.mp4"


def test_full_stream_releases_and_schedules_deletion(tmp_path) -> None:
    registry = ArtifactRegistry()
    scheduled = []
    path = tmp_path / "dl_full.mp4"
    payload = bytes(range(256)) * 20
    path.write_bytes(payload)
    streamer = _streamer(registry, scheduled)

    async def _scenario():
        delivery = await streamer.open(str(path))
        assert registry.is_in_use(path)
        assert delivery.headers["Content-Length"] == str(len(payload))
        assert delivery.media_type == "video/mp4"
        return delivery, await _drain(delivery)

    delivery, body = asyncio.run(_scenario())

    assert body == payload
    assert delivery.completed is True
    assert delivery.bytes_sent == len(payload)
    assert not registry.is_in_use(path)
    assert scheduled == [str(path)]


def test_abandoned_stream_releases_without_scheduling(tmp_path) -> None:
    registry = ArtifactRegistry()
    scheduled = []
    path = tmp_path / "dl_cut.mp4"
    path.write_bytes(b"x" * 4096)
    streamer = _streamer(registry, scheduled)

    async def _scenario():
        delivery = await streamer.open(str(path))
        delivery.close()
        delivery.close()
        return delivery

    delivery = asyncio.run(_scenario())

    assert delivery.completed is False
    assert not registry.is_in_use(path)
    assert scheduled == []
    assert path.exists()


def test_missing_file_raises_not_found_and_releases(tmp_path) -> None:
    registry = ArtifactRegistry()
    streamer = _streamer(registry, [])
    path = tmp_path / "dl_missing.mp4"

    with pytest.raises(ArtifactNotFound):
        asyncio.run(streamer.open(str(path)))

    assert not registry.is_in_use(path)
    assert registry.active_count() == 0


def test_second_stream_of_same_file_is_refused(tmp_path) -> None:
    registry = ArtifactRegistry()
    path = tmp_path / "dl_busy.mp4"
    path.write_bytes(b"x" * 10)
    streamer = _streamer(registry, [])

    async def _scenario():
        first = await streamer.open(str(path))
        with pytest.raises(ServiceBusy):
            await streamer.open(str(path))
        assert registry.count(path) == 1
        first.close()
        second = await streamer.open(str(path))
        second.close()

    asyncio.run(_scenario())

    assert registry.active_count() == 0


def test_unreadable_first_chunk_fails_before_response(tmp_path, monkeypatch) -> None:
    registry = ArtifactRegistry()
    path = tmp_path / "dl_bad.mp4"
    path.write_bytes(b"x" * 10)
    streamer = _streamer(registry, [])

    class _BrokenHandle:
        closed = False

        def read(self, size):
            raise OSError("I/O error")

        def close(self):
            self.closed = True

    handle = _BrokenHandle()
    monkeypatch.setattr("engine.delivery.open", lambda *args, **kwargs: handle, raising=False)

    with pytest.raises(DeliveryFailed):
        asyncio.run(streamer.open(str(path)))

    assert handle.closed is True
    assert not registry.is_in_use(path)


def test_read_error_mid_stream_aborts_without_scheduling(tmp_path, monkeypatch) -> None:
    registry = ArtifactRegistry()
    scheduled = []
    path = tmp_path / "dl_midway.mp4"
    path.write_bytes(b"x" * 4096)
    streamer = _streamer(registry, scheduled)

    class _FailsAfterFirstRead:
        def __init__(self):
            self.reads = 0
            self.closed = False

        def read(self, size):
            self.reads += 1
            if self.reads == 1:
                return b"x" * size
            raise OSError("device went away")

        def close(self):
            self.closed = True

    handle = _FailsAfterFirstRead()
    monkeypatch.setattr("engine.delivery.open", lambda *args, **kwargs: handle, raising=False)
    received = []

    async def _scenario():
        delivery = await streamer.open(str(path))
        with pytest.raises(OSError):
            async for chunk in delivery.iter_chunks():
                received.append(chunk)
        return delivery

    delivery = asyncio.run(_scenario())

    assert len(received) == 1
    assert delivery.bytes_sent == 1024
    assert delivery.completed is False
    assert handle.closed is True
    assert not registry.is_in_use(path)
    assert scheduled == []


def test_client_disconnect_mid_stream_releases_reference(tmp_path) -> None:
    registry = ArtifactRegistry()
    scheduled = []
    path = tmp_path / "dl_gone.mp4"
    path.write_bytes(b"x" * 8192)
    streamer = _streamer(registry, scheduled)
    sent = []

    async def _scenario():
        body_started = asyncio.Event()

        async def _receive():
            await body_started.wait()
            return {"type": "http.disconnect"}

        async def _send(message):
            sent.append(message["type"])
            if message["type"] == "http.response.body":
                body_started.set()
                # Client stops reading: the send never completes.
                await asyncio.sleep(3600)

        delivery = await streamer.open(str(path))
        scope = {"type": "http", "method": "POST", "path": "/download", "headers": []}
        await asyncio.wait_for(delivery.response()(scope, _receive, _send), timeout=10)
        return delivery

    delivery = asyncio.run(_scenario())

    assert sent[0] == "http.response.start"
    assert "http.response.body" in sent
    assert delivery.completed is False
    assert not registry.is_in_use(path)
    assert scheduled == []
    assert path.exists()
