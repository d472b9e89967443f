"""Upload session bookkeeping.

Every upload id moves through ``open -> assembling -> complete`` or
``open -> assembling -> failed``; a failed upload reopens when a new chunk
arrives. All transitions happen under one registry lock, and a chunk only
becomes visible in staging while that lock is held. So once ``begin_assembly``
has sealed a session, no chunk file can change underneath the assembler.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING

from media_server.errors import (
    AlreadyAssembling,
    AlreadyComplete,
    InvalidRequest,
    UploadNotFound,
    UploadSealed,
)

if TYPE_CHECKING:
    from media_server.assembler import AssembledObject
    from media_server.storage import LocalChunkStore, LocalObjectStore


class SessionState(str, enum.Enum):
    open = "open"
    assembling = "assembling"
    complete = "complete"
    failed = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadSession:
    upload_id: str
    total_chunks: int | None = None
    received: set[int] = field(default_factory=set)
    state: SessionState = SessionState.open
    assembled: AssembledObject | None = None
    failure: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def missing_indexes(self, total_chunks: int | None = None) -> list[int]:
        total = total_chunks if total_chunks is not None else self.total_chunks
        if total is None:
            return []
        return [idx for idx in range(total) if idx not in self.received]


class UploadSessionRegistry:
    """Per-upload state machine guarded by a single lock.

    The lock only covers bookkeeping and the final rename of a chunk into
    staging. When ``object_store`` is given, an upload id whose object is
    already published counts as ``complete`` even if this process never saw
    it assembled, so a restart does not reopen finished uploads.
    """

    def __init__(self, object_store: LocalObjectStore | None = None) -> None:
        self.object_store = object_store
        self._sessions: dict[str, UploadSession] = {}
        self._lock = Lock()

    def _snapshot(self, session: UploadSession) -> UploadSession:
        return replace(session, received=set(session.received))

    def _transition(self, session: UploadSession, state: SessionState) -> None:
        session.state = state
        session.updated_at = utc_now()

    def _ensure_open(self, session: UploadSession) -> None:
        if session.state == SessionState.assembling:
            raise UploadSealed("upload is sealed while assembling", upload_id=session.upload_id)
        if session.state == SessionState.complete:
            raise UploadSealed("upload is already assembled", upload_id=session.upload_id)

    def _published(self, upload_id: str) -> bool:
        return self.object_store is not None and self.object_store.object_size(upload_id) is not None

    def _lookup(self, upload_id: str, published: bool) -> UploadSession | None:
        session = self._sessions.get(upload_id)
        if session is None and published:
            session = UploadSession(upload_id=upload_id, state=SessionState.complete)
            self._sessions[upload_id] = session
        return session

    def open_session(self, upload_id: str, total_chunks: int | None = None) -> UploadSession:
        published = self._published(upload_id)
        with self._lock:
            session = self._lookup(upload_id, published)
            if session is None:
                session = UploadSession(upload_id=upload_id, total_chunks=total_chunks)
                self._sessions[upload_id] = session
            else:
                self._ensure_open(session)
                if total_chunks is not None:
                    session.total_chunks = total_chunks
            return self._snapshot(session)

    def begin_chunk(self, upload_id: str, chunk_index: int) -> UploadSession:
        published = self._published(upload_id)
        with self._lock:
            session = self._lookup(upload_id, published)
            if session is not None:
                self._ensure_open(session)
                if session.total_chunks is not None and chunk_index >= session.total_chunks:
                    raise InvalidRequest("chunk index out of bounds", upload_id=upload_id)
            else:
                session = UploadSession(upload_id=upload_id)
                self._sessions[upload_id] = session
            if session.state == SessionState.failed:
                session.failure = None
                self._transition(session, SessionState.open)
            return self._snapshot(session)

    def commit_chunk(self, upload_id: str, chunk_index: int, publish: Callable[[], None]) -> None:
        """Run ``publish`` (the staging rename) unless the session was sealed meanwhile."""
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise UploadNotFound("upload was abandoned", upload_id=upload_id)
            self._ensure_open(session)
            publish()
            session.received.add(chunk_index)
            session.updated_at = utc_now()

    def begin_assembly(self, upload_id: str, total_chunks: int) -> UploadSession:
        published = self._published(upload_id)
        with self._lock:
            session = self._lookup(upload_id, published)
            if session is None:
                session = UploadSession(upload_id=upload_id)
                self._sessions[upload_id] = session
            if session.state == SessionState.assembling:
                raise AlreadyAssembling("upload is already being assembled", upload_id=upload_id)
            if session.state == SessionState.complete:
                raise AlreadyComplete(upload_id, session.assembled)
            session.total_chunks = total_chunks
            session.failure = None
            self._transition(session, SessionState.assembling)
            return self._snapshot(session)

    def mark_complete(self, upload_id: str, assembled: AssembledObject) -> None:
        with self._lock:
            session = self._sessions[upload_id]
            session.assembled = assembled
            self._transition(session, SessionState.complete)

    def mark_failed(self, upload_id: str, reason: str) -> None:
        with self._lock:
            session = self._sessions[upload_id]
            session.failure = reason
            self._transition(session, SessionState.failed)

    def get(self, upload_id: str) -> UploadSession | None:
        published = self._published(upload_id)
        with self._lock:
            session = self._lookup(upload_id, published)
            return self._snapshot(session) if session is not None else None

    def abandon(self, upload_id: str) -> UploadSession:
        published = self._published(upload_id)
        with self._lock:
            session = self._lookup(upload_id, published)
            if session is None:
                raise UploadNotFound("upload not found", upload_id=upload_id)
            if session.state == SessionState.assembling:
                raise AlreadyAssembling("upload is being assembled", upload_id=upload_id)
            if session.state == SessionState.complete:
                raise AlreadyComplete(upload_id, session.assembled)
            del self._sessions[upload_id]
            return self._snapshot(session)

    def recover(self, chunk_store: LocalChunkStore) -> list[str]:
        """Rebuild sessions for uploads still present in staging.

        Uploads whose object is already published come back ``complete``;
        the rest come back ``open``.
        """
        recovered: list[str] = []
        for upload_id in chunk_store.list_uploads():
            received = set(chunk_store.list_chunks(upload_id))
            state = SessionState.complete if self._published(upload_id) else SessionState.open
            with self._lock:
                if upload_id in self._sessions:
                    continue
                self._sessions[upload_id] = UploadSession(upload_id=upload_id, received=received, state=state)
            recovered.append(upload_id)
        return recovered
