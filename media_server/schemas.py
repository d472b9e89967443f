from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InitUploadRequest(BaseModel):
    upload_id: str | None = Field(default=None, min_length=1, max_length=200)
    file_name: str | None = Field(default=None, min_length=1)
    total_chunks: int | None = Field(default=None, gt=0)


class InitUploadResponse(BaseModel):
    upload_id: str
    total_chunks: int | None
    state: str


class UploadChunkResponse(BaseModel):
    upload_id: str
    chunk_index: int
    size_bytes: int
    sha256: str


class UploadStatusResponse(BaseModel):
    upload_id: str
    state: str
    total_chunks: int | None
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]
    failure: str | None = None


class AssembleUploadRequest(BaseModel):
    total_chunks: int = Field(gt=0)
    title: str | None = None
    media_type: str = "long"
    username: str | None = None
    tags: list[str] = Field(default_factory=list)


class AssembleUploadResponse(BaseModel):
    upload_id: str
    object_id: str
    media_id: str | None
    size_bytes: int
    content_type: str
    chunk_count: int
    durable_key: str | None = None


class CommentRequest(BaseModel):
    username: str | None = None
    text: str = Field(min_length=1)


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    text: str
    created_at: datetime


class MediaRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    filename: str
    title: str
    media_type: str
    username: str
    tags: list[str]
    size_bytes: int
    content_type: str
    views: int
    likes: int
    dislikes: int
    created_at: datetime


class MediaDetailResponse(MediaRecordResponse):
    comments: list[CommentResponse]


class MediaListResponse(BaseModel):
    media: list[MediaRecordResponse]


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    retryable: bool = False
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
    missing_chunk_index: int | None = None
