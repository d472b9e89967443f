import asyncio
import hashlib
import os
import threading
from pathlib import Path

import pytest

from media_server.errors import InvalidRequest, PayloadTooLarge, StorageWriteFailed, UploadSealed
from media_server.receiver import ChunkReceiver
from media_server.sessions import UploadSessionRegistry
from media_server.storage import ChunkWriter, LocalChunkStore


def _receiver(tmp_path: Path, max_chunk_size_bytes: int = 0) -> ChunkReceiver:
    return ChunkReceiver(LocalChunkStore(tmp_path), UploadSessionRegistry(), max_chunk_size_bytes)


def _staged_files(tmp_path: Path, upload_id: str) -> list[str]:
    upload_dir = tmp_path / upload_id
    if not upload_dir.exists():
        return []
    return sorted(path.name for path in upload_dir.iterdir())


def test_receive_chunk_streams_blocks_and_registers_index(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)

    ack = receiver.receive_chunk("video.mp4", 0, [b"ab", b"", b"cd"])

    assert ack.size_bytes == 4
    assert ack.sha256 == hashlib.sha256(b"abcd").hexdigest()
    assert receiver.chunk_store.chunk_path("video.mp4", 0).read_bytes() == b"abcd"
    assert receiver.registry.get("video.mp4").received == {0}


def test_resent_chunk_overwrites_previous_payload(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)
    receiver.receive_chunk("video.mp4", 1, [b"first-attempt"])
    receiver.receive_chunk("video.mp4", 1, [b"retry"])

    assert receiver.chunk_store.chunk_path("video.mp4", 1).read_bytes() == b"retry"
    assert _staged_files(tmp_path, "video.mp4") == ["chunk_1"]


@pytest.mark.parametrize("upload_id,chunk_index", [("", 0), ("../escape", 0), ("ok", -1), ("ok", None)])
def test_invalid_identifiers_have_no_side_effects(tmp_path: Path, upload_id, chunk_index) -> None:
    receiver = _receiver(tmp_path)

    with pytest.raises(InvalidRequest):
        receiver.receive_chunk(upload_id, chunk_index, [b"data"])

    assert receiver.registry.get("ok") is None
    assert receiver.chunk_store.list_uploads() == []


def test_empty_and_mismatched_chunks_are_discarded(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)

    with pytest.raises(InvalidRequest, match="empty"):
        receiver.receive_chunk("video.mp4", 0, [])
    with pytest.raises(InvalidRequest, match="checksum"):
        receiver.receive_chunk("video.mp4", 0, [b"abcd"], expected_sha256="00" * 32)

    assert _staged_files(tmp_path, "video.mp4") == []
    assert receiver.registry.get("video.mp4").received == set()


def test_checksum_match_is_case_insensitive(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)
    digest = hashlib.sha256(b"abcd").hexdigest().upper()

    ack = receiver.receive_chunk("video.mp4", 0, [b"abcd"], expected_sha256=digest)

    assert ack.size_bytes == 4


def test_oversized_chunk_is_rejected(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path, max_chunk_size_bytes=4)

    with pytest.raises(PayloadTooLarge):
        receiver.receive_chunk("video.mp4", 0, [b"abc", b"de"])

    assert _staged_files(tmp_path, "video.mp4") == []


def test_storage_failure_removes_partial_chunk(tmp_path: Path, monkeypatch) -> None:
    receiver = _receiver(tmp_path)
    calls = {"count": 0}
    original_write = ChunkWriter.write

    def _flaky_write(self, block: bytes) -> None:
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError(28, "No space left on device")
        original_write(self, block)

    monkeypatch.setattr(ChunkWriter, "write", _flaky_write)

    with pytest.raises(StorageWriteFailed) as exc_info:
        receiver.receive_chunk("video.mp4", 0, [b"aaaa", b"bbbb"])

    assert exc_info.value.retryable is True
    assert _staged_files(tmp_path, "video.mp4") == []
    assert receiver.registry.get("video.mp4").received == set()


def test_aborted_body_discards_partial_chunk(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)

    def _body():
        yield b"first block"
        raise ConnectionResetError("client went away")

    with pytest.raises(ConnectionResetError):
        receiver.receive_chunk("video.mp4", 0, _body())

    assert _staged_files(tmp_path, "video.mp4") == []


def test_sealed_upload_rejects_chunks(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)
    receiver.receive_chunk("video.mp4", 0, [b"abcd"])
    receiver.registry.begin_assembly("video.mp4", total_chunks=1)

    with pytest.raises(UploadSealed):
        receiver.receive_chunk("video.mp4", 1, [b"late"])

    assert _staged_files(tmp_path, "video.mp4") == ["chunk_0"]


def test_chunk_sealed_mid_body_is_not_committed(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)
    receiver.receive_chunk("video.mp4", 0, [b"abcd"])

    def _body():
        yield b"in-flight"
        receiver.registry.begin_assembly("video.mp4", total_chunks=1)
        yield b"-tail"

    with pytest.raises(UploadSealed):
        receiver.receive_chunk("video.mp4", 1, _body())

    assert _staged_files(tmp_path, "video.mp4") == ["chunk_0"]


def test_receive_chunk_stream_consumes_async_body(tmp_path: Path) -> None:
    receiver = _receiver(tmp_path)

    async def _body():
        for block in (b"012", b"345"):
            yield block

    ack = asyncio.run(receiver.receive_chunk_stream("video.mp4", 4, _body()))

    assert ack.size_bytes == 6
    assert receiver.chunk_store.chunk_path("video.mp4", 4).read_bytes() == b"012345"


def test_slow_chunk_flush_does_not_block_other_uploads(tmp_path: Path, monkeypatch) -> None:
    receiver = _receiver(tmp_path)
    entered = threading.Event()
    release = threading.Event()
    original_fsync = os.fsync

    def _slow_fsync(fd: int) -> None:
        if not entered.is_set():
            entered.set()
            assert release.wait(timeout=5)
        original_fsync(fd)

    monkeypatch.setattr(os, "fsync", _slow_fsync)
    worker = threading.Thread(target=lambda: receiver.receive_chunk("a.mp4", 0, [b"slow"]))
    worker.start()
    assert entered.wait(timeout=5)

    ack = receiver.receive_chunk("b.mp4", 0, [b"fast"])

    assert ack.size_bytes == 4
    assert receiver.registry.get("b.mp4").received == {0}
    assert receiver.registry.get("a.mp4").received == set()

    release.set()
    worker.join(timeout=5)
    assert receiver.registry.get("a.mp4").received == {0}
