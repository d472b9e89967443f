import random
import threading
from pathlib import Path

import pytest

from media_server.assembler import AssembledObject, Assembler
from media_server.errors import (
    AlreadyAssembling,
    AlreadyComplete,
    AssemblyFailed,
    IncompleteUpload,
    InvalidRequest,
    UploadSealed,
)
from media_server.receiver import ChunkReceiver
from media_server.sessions import SessionState, UploadSessionRegistry
from media_server.storage import LocalChunkStore, LocalObjectStore


class _Harness:
    def __init__(self, root: Path, copy_buffer_bytes: int = 3) -> None:
        self.registry = UploadSessionRegistry()
        self.chunk_store = LocalChunkStore(root / "staging")
        self.object_store = LocalObjectStore(root / "objects")
        self.receiver = ChunkReceiver(self.chunk_store, self.registry)
        self.assembler = Assembler(
            self.chunk_store, self.object_store, self.registry, copy_buffer_bytes=copy_buffer_bytes
        )

    def upload(self, upload_id: str, chunks: dict[int, bytes]) -> None:
        for idx, data in chunks.items():
            self.receiver.receive_chunk(upload_id, idx, [data])

    def incoming(self) -> list[Path]:
        return list(self.object_store.incoming.iterdir())


def test_assembly_orders_chunks_by_index_regardless_of_upload_order(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    payloads = {idx: f"<chunk-{idx}>".encode() * (idx + 1) for idx in range(8)}
    order = list(payloads)
    random.Random(7).shuffle(order)
    harness.upload("movie.mp4", {idx: payloads[idx] for idx in order})

    assembled = harness.assembler.assemble("movie.mp4", 8, {"title": "Trailer"})

    expected = b"".join(payloads[idx] for idx in range(8))
    assert Path(assembled.location).read_bytes() == expected
    assert assembled.size_bytes == len(expected)
    assert assembled.content_type == "video/mp4"
    assert assembled.chunk_count == 8
    assert assembled.metadata == {"title": "Trailer"}
    assert harness.registry.get("movie.mp4").state == SessionState.complete
    assert harness.chunk_store.list_uploads() == []
    assert harness.incoming() == []


def test_missing_chunk_fails_without_visible_object(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"aaa", 1: b"bbb", 3: b"ddd"})

    with pytest.raises(IncompleteUpload) as exc_info:
        harness.assembler.assemble("movie.mp4", 4)

    assert exc_info.value.missing_index == 2
    assert exc_info.value.retryable is True
    assert harness.object_store.object_size("movie.mp4") is None
    assert harness.incoming() == []
    assert harness.registry.get("movie.mp4").state == SessionState.failed
    assert harness.chunk_store.list_chunks("movie.mp4") == {0: 3, 1: 3, 3: 3}


def test_resending_missing_chunk_allows_retry(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"aaa"})
    with pytest.raises(IncompleteUpload):
        harness.assembler.assemble("movie.mp4", 2)

    harness.upload("movie.mp4", {1: b"bbb"})
    assembled = harness.assembler.assemble("movie.mp4", 2)

    assert Path(assembled.location).read_bytes() == b"aaabbb"


def test_reuploaded_chunk_uses_latest_bytes(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"old-payload", 1: b"tail"})
    harness.upload("movie.mp4", {0: b"new"})

    assembled = harness.assembler.assemble("movie.mp4", 2)

    assert Path(assembled.location).read_bytes() == b"newtail"


def test_extra_chunks_beyond_total_are_ignored(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"keep", 1: b"-me", 2: b"drop"})

    assembled = harness.assembler.assemble("movie.mp4", 2)

    assert Path(assembled.location).read_bytes() == b"keep-me"
    assert harness.chunk_store.list_uploads() == []


def test_replay_returns_same_object_without_reading_chunks(tmp_path: Path, monkeypatch) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc", 1: b"def"})
    first = harness.assembler.assemble("movie.mp4", 2)

    def _no_reads(*args, **kwargs):
        raise AssertionError("chunks must not be read on replay")

    monkeypatch.setattr(harness.chunk_store, "open_chunk", _no_reads)
    monkeypatch.setattr(harness.chunk_store, "chunk_size", _no_reads)

    assert harness.assembler.assemble("movie.mp4", 2) == first
    with pytest.raises(AlreadyComplete):
        harness.assembler.assemble("movie.mp4", 3)


def test_completed_upload_is_sealed(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc"})
    harness.assembler.assemble("movie.mp4", 1)

    with pytest.raises(UploadSealed):
        harness.upload("movie.mp4", {0: b"zzz"})


@pytest.mark.parametrize("total_chunks", [0, -1, True, "3"])
def test_total_chunks_must_be_positive_int(tmp_path: Path, total_chunks) -> None:
    harness = _Harness(tmp_path)

    with pytest.raises(InvalidRequest):
        harness.assembler.assemble("movie.mp4", total_chunks)

    assert harness.registry.get("movie.mp4") is None


def test_io_error_keeps_chunks_and_temp_file(tmp_path: Path, monkeypatch) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc", 1: b"def"})
    original_open = harness.chunk_store.open_chunk

    def _failing_open(upload_id: str, chunk_index: int):
        if chunk_index == 1:
            raise OSError(5, "Input/output error")
        return original_open(upload_id, chunk_index)

    monkeypatch.setattr(harness.chunk_store, "open_chunk", _failing_open)

    with pytest.raises(AssemblyFailed) as exc_info:
        harness.assembler.assemble("movie.mp4", 2)

    assert exc_info.value.retryable is True
    assert harness.object_store.object_size("movie.mp4") is None
    assert [path.read_bytes() for path in harness.incoming()] == [b"abc"]
    assert harness.chunk_store.list_chunks("movie.mp4") == {0: 3, 1: 3}
    assert harness.registry.get("movie.mp4").state == SessionState.failed

    monkeypatch.setattr(harness.chunk_store, "open_chunk", original_open)
    assembled = harness.assembler.assemble("movie.mp4", 2)
    assert Path(assembled.location).read_bytes() == b"abcdef"


def test_size_mismatch_is_fatal(tmp_path: Path, monkeypatch) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc"})
    monkeypatch.setattr(harness.chunk_store, "chunk_size", lambda upload_id, chunk_index: 10)

    with pytest.raises(AssemblyFailed, match="chunks total 10"):
        harness.assembler.assemble("movie.mp4", 1)

    assert harness.object_store.object_size("movie.mp4") is None


def test_staging_cleanup_failure_is_not_fatal(tmp_path: Path, monkeypatch, caplog) -> None:
    caplog.set_level("WARNING", logger="media.storage")
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc"})

    def _locked(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(harness.chunk_store, "delete_chunk", _locked)
    monkeypatch.setattr(harness.chunk_store, "delete_upload", _locked)

    assembled = harness.assembler.assemble("movie.mp4", 1)

    assert assembled.size_bytes == 3
    assert any("staging_cleanup_failed" in record.message for record in caplog.records)


def test_concurrent_assembly_runs_once(tmp_path: Path, monkeypatch) -> None:
    harness = _Harness(tmp_path)
    harness.upload("movie.mp4", {0: b"abc", 1: b"def"})
    entered = threading.Event()
    release = threading.Event()
    original_open = harness.chunk_store.open_chunk

    def _slow_open(upload_id: str, chunk_index: int):
        entered.set()
        assert release.wait(timeout=5)
        return original_open(upload_id, chunk_index)

    monkeypatch.setattr(harness.chunk_store, "open_chunk", _slow_open)
    results: list[AssembledObject] = []

    worker = threading.Thread(target=lambda: results.append(harness.assembler.assemble("movie.mp4", 2)))
    worker.start()
    assert entered.wait(timeout=5)

    with pytest.raises(AlreadyAssembling):
        harness.assembler.assemble("movie.mp4", 2)

    release.set()
    worker.join(timeout=5)

    assert len(results) == 1
    assert Path(results[0].location).read_bytes() == b"abcdef"
    assert harness.assembler.assemble("movie.mp4", 2) == results[0]
