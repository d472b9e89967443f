import logging
import os
import shutil
import time
from dataclasses import dataclass, field

from media_server.errors import AlreadyComplete, AssemblyFailed, IncompleteUpload, InvalidRequest
from media_server.logs import log_event, storage_logger
from media_server.metrics import assembled_bytes_total, assemblies_total, assembly_duration_seconds
from media_server.sessions import UploadSessionRegistry
from media_server.storage import LocalChunkStore, LocalObjectStore, guess_content_type, validate_upload_id


@dataclass(frozen=True)
class AssembledObject:
    object_id: str
    location: str
    size_bytes: int
    content_type: str
    chunk_count: int
    metadata: dict = field(default_factory=dict)


class Assembler:
    def __init__(
        self,
        chunk_store: LocalChunkStore,
        object_store: LocalObjectStore,
        registry: UploadSessionRegistry,
        copy_buffer_bytes: int = 1024 * 1024,
        default_content_type: str = "video/mp4",
    ) -> None:
        self.chunk_store = chunk_store
        self.object_store = object_store
        self.registry = registry
        self.copy_buffer_bytes = copy_buffer_bytes
        self.default_content_type = default_content_type

    def assemble(self, upload_id: str, total_chunks: int, metadata: dict | None = None) -> AssembledObject:
        """Concatenate chunks ``0..total_chunks-1`` into one published object.

        A repeated call after success returns the recorded object without
        touching staging again. Chunks with an index at or above
        ``total_chunks`` are ignored and dropped with the staging directory.
        """
        validate_upload_id(upload_id)
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks < 1:
            raise InvalidRequest("total_chunks must be a positive integer", upload_id=upload_id)

        try:
            self.registry.begin_assembly(upload_id, total_chunks)
        except AlreadyComplete as exc:
            if exc.assembled is not None and exc.assembled.chunk_count == total_chunks:
                assemblies_total.labels(outcome="replayed").inc()
                return exc.assembled
            raise

        started = time.perf_counter()
        try:
            assembled = self._concatenate(upload_id, total_chunks, dict(metadata or {}))
        except Exception as exc:
            self.registry.mark_failed(upload_id, str(exc))
            assemblies_total.labels(outcome=getattr(exc, "error_code", "internal_error")).inc()
            raise
        assembly_duration_seconds.observe(time.perf_counter() - started)

        self.registry.mark_complete(upload_id, assembled)
        assemblies_total.labels(outcome="complete").inc()
        assembled_bytes_total.inc(assembled.size_bytes)
        self._cleanup_staging(upload_id, total_chunks)
        return assembled

    def _concatenate(self, upload_id: str, total_chunks: int, metadata: dict) -> AssembledObject:
        expected_size = 0
        for idx in range(total_chunks):
            size = self.chunk_store.chunk_size(upload_id, idx)
            if size is None:
                raise IncompleteUpload(upload_id, idx)
            expected_size += size

        temp_path = self.object_store.incoming_path(upload_id)
        try:
            with temp_path.open("wb") as target:
                for idx in range(total_chunks):
                    with self.chunk_store.open_chunk(upload_id, idx) as source:
                        shutil.copyfileobj(source, target, self.copy_buffer_bytes)
                target.flush()
                os.fsync(target.fileno())
                written = target.tell()
        except OSError as exc:
            raise AssemblyFailed(
                f"concatenation failed, partial output left at {temp_path}: {exc}", upload_id=upload_id
            ) from exc

        if written != expected_size:
            raise AssemblyFailed(
                f"assembled {written} bytes but chunks total {expected_size}", upload_id=upload_id
            )

        try:
            location = self.object_store.publish(temp_path, upload_id)
        except OSError as exc:
            raise AssemblyFailed(f"cannot publish assembled object: {exc}", upload_id=upload_id) from exc

        return AssembledObject(
            object_id=upload_id,
            location=str(location),
            size_bytes=written,
            content_type=guess_content_type(upload_id, self.default_content_type),
            chunk_count=total_chunks,
            metadata=metadata,
        )

    def _cleanup_staging(self, upload_id: str, total_chunks: int) -> None:
        for idx in range(total_chunks):
            try:
                self.chunk_store.delete_chunk(upload_id, idx)
            except OSError as exc:
                log_event(
                    storage_logger,
                    {
                        "event": "staging_cleanup_failed",
                        "upload_id": upload_id,
                        "chunk_index": idx,
                        "detail": str(exc),
                    },
                    level=logging.WARNING,
                )
        try:
            self.chunk_store.delete_upload(upload_id)
        except OSError as exc:
            log_event(
                storage_logger,
                {"event": "staging_cleanup_failed", "upload_id": upload_id, "detail": str(exc)},
                level=logging.WARNING,
            )
