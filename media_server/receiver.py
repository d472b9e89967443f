import asyncio
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass

from media_server.errors import InvalidRequest, PayloadTooLarge, StorageWriteFailed
from media_server.metrics import bytes_received_total, chunk_write_failures_total, chunks_received_total
from media_server.sessions import UploadSessionRegistry
from media_server.storage import ChunkWriter, LocalChunkStore, validate_chunk_index, validate_upload_id


@dataclass(frozen=True)
class ChunkAck:
    upload_id: str
    chunk_index: int
    size_bytes: int
    sha256: str


class ChunkReceiver:
    """Writes chunk bodies into staging and records them on the upload session.

    A body is streamed into a temp file next to its final name and renamed into
    place only once complete, so a retried or concurrent write of the same index
    never leaves a truncated chunk behind. Any failure discards the temp file.
    """

    def __init__(
        self,
        chunk_store: LocalChunkStore,
        registry: UploadSessionRegistry,
        max_chunk_size_bytes: int = 0,
    ) -> None:
        self.chunk_store = chunk_store
        self.registry = registry
        self.max_chunk_size_bytes = max_chunk_size_bytes

    def _open(self, upload_id: str, chunk_index: int) -> ChunkWriter:
        validate_upload_id(upload_id)
        validate_chunk_index(chunk_index, upload_id)
        self.registry.begin_chunk(upload_id, chunk_index)
        try:
            return self.chunk_store.open_writer(upload_id, chunk_index)
        except OSError as exc:
            chunk_write_failures_total.inc()
            raise StorageWriteFailed(f"cannot open staging file: {exc}", upload_id=upload_id) from exc

    def _write(self, writer: ChunkWriter, block: bytes, upload_id: str) -> None:
        if self.max_chunk_size_bytes and writer.size + len(block) > self.max_chunk_size_bytes:
            raise PayloadTooLarge(
                f"chunk exceeds {self.max_chunk_size_bytes} bytes", upload_id=upload_id
            )
        try:
            writer.write(block)
        except OSError as exc:
            chunk_write_failures_total.inc()
            raise StorageWriteFailed(f"chunk write failed: {exc}", upload_id=upload_id) from exc

    def _finish(
        self, writer: ChunkWriter, upload_id: str, chunk_index: int, expected_sha256: str | None
    ) -> ChunkAck:
        if writer.size == 0:
            raise InvalidRequest("chunk payload is empty", upload_id=upload_id)
        if expected_sha256 and expected_sha256.lower() != writer.sha256:
            raise InvalidRequest("chunk checksum mismatch", upload_id=upload_id)
        try:
            writer.finish()
            self.registry.commit_chunk(upload_id, chunk_index, writer.publish)
        except OSError as exc:
            chunk_write_failures_total.inc()
            raise StorageWriteFailed(f"chunk commit failed: {exc}", upload_id=upload_id) from exc
        chunks_received_total.inc()
        bytes_received_total.inc(writer.size)
        return ChunkAck(upload_id=upload_id, chunk_index=chunk_index, size_bytes=writer.size, sha256=writer.sha256)

    def receive_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        body: Iterable[bytes],
        expected_sha256: str | None = None,
    ) -> ChunkAck:
        writer = self._open(upload_id, chunk_index)
        try:
            for block in body:
                if block:
                    self._write(writer, block, upload_id)
            return self._finish(writer, upload_id, chunk_index, expected_sha256)
        except BaseException:
            writer.abort()
            raise

    async def receive_chunk_stream(
        self,
        upload_id: str,
        chunk_index: int,
        body: AsyncIterable[bytes],
        expected_sha256: str | None = None,
    ) -> ChunkAck:
        writer = await asyncio.to_thread(self._open, upload_id, chunk_index)
        try:
            async for block in body:
                if block:
                    await asyncio.to_thread(self._write, writer, block, upload_id)
            return await asyncio.to_thread(self._finish, writer, upload_id, chunk_index, expected_sha256)
        except BaseException:
            writer.abort()
            raise
