"""Error taxonomy shared by the upload, assembly and streaming components.

Each error knows the HTTP status it maps to and whether the client can expect a
retry to help. The API layer renders them as ``ErrorResponse`` bodies.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from media_server.assembler import AssembledObject


class MediaServerError(Exception):
    status_code: int = 500
    error_code: str = "internal_error"
    retryable: bool = False

    def __init__(self, detail: str, upload_id: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.upload_id = upload_id

    @property
    def headers(self) -> dict[str, str]:
        return {}


class InvalidRequest(MediaServerError):
    status_code = 400
    error_code = "invalid_request"


class PayloadTooLarge(InvalidRequest):
    status_code = 413
    error_code = "payload_too_large"


class StorageWriteFailed(MediaServerError):
    status_code = 500
    error_code = "storage_write_failed"
    retryable = True


class AssemblyFailed(MediaServerError):
    status_code = 500
    error_code = "assembly_failed"
    retryable = True


class IncompleteUpload(MediaServerError):
    status_code = 409
    error_code = "incomplete_upload"
    retryable = True

    def __init__(self, upload_id: str, missing_index: int) -> None:
        super().__init__(f"missing chunk {missing_index}", upload_id=upload_id)
        self.missing_index = missing_index


class AlreadyAssembling(MediaServerError):
    status_code = 409
    error_code = "already_assembling"


class AlreadyComplete(MediaServerError):
    status_code = 409
    error_code = "already_complete"

    def __init__(self, upload_id: str, assembled: AssembledObject | None = None) -> None:
        super().__init__("upload is already assembled", upload_id=upload_id)
        self.assembled = assembled


class UploadSealed(MediaServerError):
    status_code = 409
    error_code = "upload_sealed"


class UploadNotFound(MediaServerError):
    status_code = 404
    error_code = "upload_not_found"


class RangeNotSatisfiable(MediaServerError):
    status_code = 416
    error_code = "range_not_satisfiable"

    def __init__(self, total_length: int, detail: str = "range not satisfiable") -> None:
        super().__init__(detail)
        self.total_length = total_length

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Range": f"bytes */{self.total_length}"}


class ObjectNotFound(MediaServerError):
    status_code = 404
    error_code = "object_not_found"


class MediaNotFound(MediaServerError):
    status_code = 404
    error_code = "media_not_found"
