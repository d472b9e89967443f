import logging
import re
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import PurePosixPath

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from media_server import catalog
from media_server.assembler import AssembledObject
from media_server.config import Settings, settings
from media_server.db import Base, build_engine, build_session_factory, get_db
from media_server.errors import AlreadyComplete, IncompleteUpload, InvalidRequest, MediaServerError, UploadNotFound
from media_server.logs import audit_logger, log_event, request_logger, storage_logger, trace_id
from media_server.metrics import http_request_duration_seconds, metrics_response
from media_server.schemas import (
    AssembleUploadRequest,
    AssembleUploadResponse,
    CommentRequest,
    CommentResponse,
    ErrorResponse,
    InitUploadRequest,
    InitUploadResponse,
    MediaDetailResponse,
    MediaListResponse,
    MediaRecordResponse,
    UploadChunkResponse,
    UploadStatusResponse,
)
from media_server.services import MediaServices, build_services
from media_server.sessions import SessionState
from media_server.storage import validate_upload_id
from media_server.tracing import setup_tracing

_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")

router = APIRouter()


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id") or request.path_params.get("object_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    log_event(request_logger, payload)


def _audit_event(payload: dict) -> None:
    log_event(audit_logger, payload)


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        416: "range_not_satisfiable",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _generate_upload_id(file_name: str | None) -> str:
    extension = PurePosixPath(file_name or "").suffix.lower()
    if not _EXTENSION_PATTERN.match(extension):
        extension = ""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{extension}"


def get_services(request: Request) -> MediaServices:
    return request.app.state.services


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid upload id or chunk index"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
UPLOAD_CONFLICT_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Upload not found"},
    409: {"model": ErrorResponse, "description": "Upload state conflict"},
}


async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Media-App-Version"] = request.app.state.config.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


async def media_error_handler(request: Request, exc: MediaServerError):
    upload_id = exc.upload_id or _upload_id(request)
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "error_code": exc.error_code,
            "retryable": exc.retryable,
            "detail": exc.detail,
        }
    )
    if exc.status_code == 416:
        return Response(status_code=416, headers={"Accept-Ranges": "bytes", **exc.headers})
    content = {
        "detail": exc.detail,
        "error_code": exc.error_code,
        "retryable": exc.retryable,
        "request_id": _request_id(request),
        "upload_id": upload_id,
        "trace_id": trace_id(),
    }
    if isinstance(exc, IncompleteUpload):
        content["missing_chunk_index"] = exc.missing_index
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "retryable": False,
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
        headers=exc.headers or {},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    ]
    return await media_error_handler(request, InvalidRequest("; ".join(problems) or "invalid request"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "retryable": False,
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
    )


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version(services: MediaServices = Depends(get_services)) -> dict[str, str]:
    return {
        "app_name": services.config.app_name,
        "app_version": services.config.app_version,
        "durable_backend": services.config.durable_backend,
    }


@router.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@router.post(
    "/v1/uploads/init",
    response_model=InitUploadResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Upload already sealed"}},
)
def init_upload(
    request: Request,
    payload: InitUploadRequest,
    services: MediaServices = Depends(get_services),
) -> InitUploadResponse:
    upload_id = validate_upload_id(payload.upload_id) if payload.upload_id else _generate_upload_id(payload.file_name)
    session = services.registry.open_session(upload_id, total_chunks=payload.total_chunks)
    _audit_event(
        {
            "event": "audit",
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "file_name": payload.file_name,
            "total_chunks": session.total_chunks,
            "state": session.state.value,
        }
    )
    return InitUploadResponse(upload_id=upload_id, total_chunks=session.total_chunks, state=session.state.value)


@router.put(
    "/v1/uploads/{upload_id}/chunks/{chunk_index}",
    response_model=UploadChunkResponse,
    status_code=202,
    responses={
        **COMMON_ERROR_RESPONSES,
        **UPLOAD_CONFLICT_RESPONSES,
        413: {"model": ErrorResponse, "description": "Chunk exceeds configured size limit"},
    },
)
async def upload_chunk(
    request: Request,
    upload_id: str,
    chunk_index: int,
    chunk_sha256: str | None = Header(default=None, alias="X-Chunk-SHA256"),
    services: MediaServices = Depends(get_services),
) -> UploadChunkResponse:
    ack = await services.receiver.receive_chunk_stream(
        upload_id, chunk_index, request.stream(), expected_sha256=chunk_sha256
    )
    _audit_event(
        {
            "event": "audit",
            "action": "chunk_received",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "chunk_index": chunk_index,
            "size_bytes": ack.size_bytes,
        }
    )
    return UploadChunkResponse(
        upload_id=ack.upload_id, chunk_index=ack.chunk_index, size_bytes=ack.size_bytes, sha256=ack.sha256
    )


@router.get(
    "/v1/uploads/{upload_id}",
    response_model=UploadStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def upload_status(upload_id: str, services: MediaServices = Depends(get_services)) -> UploadStatusResponse:
    session = services.registry.get(validate_upload_id(upload_id))
    if session is None:
        raise UploadNotFound("upload not found", upload_id=upload_id)
    return UploadStatusResponse(
        upload_id=upload_id,
        state=session.state.value,
        total_chunks=session.total_chunks,
        received_chunk_indexes=sorted(session.received),
        missing_chunk_indexes=session.missing_indexes(),
        failure=session.failure,
    )


def _push_to_durable_store(services: MediaServices, assembled: AssembledObject) -> str | None:
    if services.durable_store is None:
        return None
    try:
        return services.durable_store.put_file(assembled.location, assembled.object_id, assembled.content_type)
    except Exception as exc:
        log_event(
            storage_logger,
            {"event": "durable_upload_failed", "upload_id": assembled.object_id, "detail": str(exc)},
            level=logging.WARNING,
        )
        return None


@router.post(
    "/v1/uploads/{upload_id}/assemble",
    response_model=AssembleUploadResponse,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_CONFLICT_RESPONSES},
)
def assemble_upload(
    request: Request,
    upload_id: str,
    payload: AssembleUploadRequest,
    services: MediaServices = Depends(get_services),
    db: Session = Depends(get_db),
) -> AssembleUploadResponse:
    record = catalog.find_by_filename(db, upload_id)
    session = services.registry.get(validate_upload_id(upload_id))
    if record is not None and (session is None or session.assembled is None):
        # Assembled before a restart; only the media record knows the result.
        if record.chunk_count != payload.total_chunks:
            raise AlreadyComplete(upload_id)
        size_bytes, content_type, chunk_count = record.size_bytes, record.content_type, record.chunk_count
        replay = True
    else:
        assembled = services.assembler.assemble(
            upload_id, payload.total_chunks, payload.model_dump(exclude={"total_chunks"})
        )
        size_bytes, content_type, chunk_count = assembled.size_bytes, assembled.content_type, assembled.chunk_count
        record, created = catalog.record_assembled_object(db, assembled)
        replay = not created
        if created:
            durable_key = _push_to_durable_store(services, assembled)
            if durable_key is not None:
                record = catalog.set_durable_key(db, record, durable_key)
    _audit_event(
        {
            "event": "audit",
            "action": "upload_assemble",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "media_id": record.id,
            "size_bytes": size_bytes,
            "chunk_count": chunk_count,
            "idempotent_replay": replay,
        }
    )
    return AssembleUploadResponse(
        upload_id=upload_id,
        object_id=record.filename,
        media_id=record.id,
        size_bytes=size_bytes,
        content_type=content_type,
        chunk_count=chunk_count,
        durable_key=record.durable_key,
    )


@router.delete(
    "/v1/uploads/{upload_id}",
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_CONFLICT_RESPONSES},
)
def abandon_upload(
    request: Request,
    upload_id: str,
    services: MediaServices = Depends(get_services),
) -> dict:
    session = services.registry.abandon(validate_upload_id(upload_id))
    try:
        services.chunk_store.delete_upload(upload_id)
    except OSError as exc:
        log_event(
            storage_logger,
            {"event": "staging_cleanup_failed", "upload_id": upload_id, "detail": str(exc)},
            level=logging.WARNING,
        )
    _audit_event(
        {
            "event": "audit",
            "action": "upload_abandon",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "received_chunks": len(session.received),
        }
    )
    return {"upload_id": upload_id, "state": "abandoned"}


@router.get(
    "/v1/media/{object_id}/stream",
    responses={
        404: {"model": ErrorResponse, "description": "Object not found"},
        416: {"description": "Range not satisfiable"},
    },
)
def stream_media(
    request: Request,
    object_id: str,
    range: str | None = Header(default=None),
    services: MediaServices = Depends(get_services),
    db: Session = Depends(get_db),
) -> Response:
    result = services.stream_server.serve(
        object_id, range, on_served=lambda served_id, _status: catalog.increment_views(db, served_id)
    )
    _audit_event(
        {
            "event": "audit",
            "action": "stream",
            "request_id": _request_id(request),
            "upload_id": object_id,
            "status_code": result.status_code,
            "range_requested": bool(range),
        }
    )
    if result.status_code == 416:
        return Response(status_code=416, headers=result.headers)
    return StreamingResponse(result.body, status_code=result.status_code, headers=result.headers)


@router.get("/v1/media", response_model=MediaListResponse)
def list_media(media_type: str = "long", db: Session = Depends(get_db)) -> MediaListResponse:
    records = catalog.list_media(db, media_type)
    return MediaListResponse(media=[MediaRecordResponse.model_validate(record) for record in records])


@router.get(
    "/v1/media/{media_id}",
    response_model=MediaDetailResponse,
    responses={404: {"model": ErrorResponse, "description": "Media not found"}},
)
def get_media(media_id: str, db: Session = Depends(get_db)) -> MediaDetailResponse:
    return MediaDetailResponse.model_validate(catalog.get_media(db, media_id))


@router.post(
    "/v1/media/{media_id}/like",
    response_model=MediaRecordResponse,
    responses={404: {"model": ErrorResponse, "description": "Media not found"}},
)
def like_media(media_id: str, db: Session = Depends(get_db)) -> MediaRecordResponse:
    return MediaRecordResponse.model_validate(catalog.add_like(db, media_id))


@router.post(
    "/v1/media/{media_id}/dislike",
    response_model=MediaRecordResponse,
    responses={404: {"model": ErrorResponse, "description": "Media not found"}},
)
def dislike_media(media_id: str, db: Session = Depends(get_db)) -> MediaRecordResponse:
    return MediaRecordResponse.model_validate(catalog.add_dislike(db, media_id))


@router.post(
    "/v1/media/{media_id}/comments",
    response_model=CommentResponse,
    status_code=201,
    responses={404: {"model": ErrorResponse, "description": "Media not found"}},
)
def comment_media(media_id: str, payload: CommentRequest, db: Session = Depends(get_db)) -> CommentResponse:
    comment = catalog.add_comment(db, media_id, payload.username, payload.text)
    return CommentResponse.model_validate(comment)


def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings
    engine = build_engine(config.database_url)
    services = build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.auto_create_schema:
            Base.metadata.create_all(bind=engine)
        if config.recover_sessions_on_startup:
            recovered = services.registry.recover(services.chunk_store)
            if recovered:
                log_event(storage_logger, {"event": "sessions_recovered", "upload_ids": recovered})
        yield
        engine.dispose()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.state.config = config
    app.state.services = services
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    app.middleware("http")(request_context_and_logging)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials=config.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Accept-Ranges", "Content-Range", "Content-Length", "X-Request-ID"],
    )
    app.add_exception_handler(MediaServerError, media_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(router)
    setup_tracing(app, config)
    return app


app = create_app()
