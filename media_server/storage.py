import hashlib
import mimetypes
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from media_server.config import Settings
from media_server.errors import InvalidRequest

UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,199}$")
CHUNK_FILE_PATTERN = re.compile(r"^chunk_(\d+)$")
INCOMING_DIRNAME = ".incoming"


def validate_upload_id(upload_id: str | None) -> str:
    if not upload_id:
        raise InvalidRequest("upload id is required")
    if not UPLOAD_ID_PATTERN.match(upload_id) or ".." in upload_id:
        raise InvalidRequest("upload id contains unsupported characters", upload_id=upload_id)
    return upload_id


def guess_content_type(object_id: str, default: str = "video/mp4") -> str:
    guessed, _ = mimetypes.guess_type(object_id)
    return guessed or default


def validate_chunk_index(chunk_index: int | None, upload_id: str | None = None) -> int:
    if chunk_index is None:
        raise InvalidRequest("chunk index is required", upload_id=upload_id)
    if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or chunk_index < 0:
        raise InvalidRequest("chunk index must be a non-negative integer", upload_id=upload_id)
    return chunk_index


class ChunkWriter:
    """Streams one chunk into a private temp file.

    ``finish`` makes the bytes durable and ``publish`` renames them into place,
    so only the rename has to run while the upload session is locked.
    """

    def __init__(self, final_path: Path, temp_path: Path) -> None:
        self.final_path = final_path
        self.temp_path = temp_path
        self.size = 0
        self._digest = hashlib.sha256()
        self._file: BinaryIO = temp_path.open("wb")

    @property
    def sha256(self) -> str:
        return self._digest.hexdigest()

    def write(self, block: bytes) -> None:
        self._file.write(block)
        self._digest.update(block)
        self.size += len(block)

    def finish(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()

    def publish(self) -> None:
        os.replace(self.temp_path, self.final_path)

    def commit(self) -> None:
        self.finish()
        self.publish()

    def abort(self) -> None:
        if not self._file.closed:
            self._file.close()
        self.temp_path.unlink(missing_ok=True)


class LocalChunkStore:
    """Staging area laid out as ``<root>/<upload_id>/chunk_<index>``.

    Names are deterministic so an in-flight upload can be re-enumerated after a
    restart by listing its directory.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def chunk_key(self, upload_id: str, chunk_index: int) -> str:
        return f"{upload_id}/chunk_{chunk_index}"

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.root / self.chunk_key(upload_id, chunk_index)

    def open_writer(self, upload_id: str, chunk_index: int) -> ChunkWriter:
        upload_dir = self.root / upload_id
        upload_dir.mkdir(parents=True, exist_ok=True)
        temp_path = upload_dir / f".chunk_{chunk_index}.{uuid.uuid4().hex}.tmp"
        return ChunkWriter(self.chunk_path(upload_id, chunk_index), temp_path)

    def has_chunk(self, upload_id: str, chunk_index: int) -> bool:
        return self.chunk_path(upload_id, chunk_index).is_file()

    def chunk_size(self, upload_id: str, chunk_index: int) -> int | None:
        try:
            return self.chunk_path(upload_id, chunk_index).stat().st_size
        except FileNotFoundError:
            return None

    def open_chunk(self, upload_id: str, chunk_index: int) -> BinaryIO:
        return self.chunk_path(upload_id, chunk_index).open("rb")

    def list_chunks(self, upload_id: str) -> dict[int, int]:
        upload_dir = self.root / upload_id
        if not upload_dir.is_dir():
            return {}
        found: dict[int, int] = {}
        for path in upload_dir.iterdir():
            match = CHUNK_FILE_PATTERN.match(path.name)
            if match and path.is_file():
                found[int(match.group(1))] = path.stat().st_size
        return dict(sorted(found.items()))

    def list_uploads(self) -> list[str]:
        return sorted(
            path.name for path in self.root.iterdir() if path.is_dir() and UPLOAD_ID_PATTERN.match(path.name)
        )

    def delete_chunk(self, upload_id: str, chunk_index: int) -> None:
        self.chunk_path(upload_id, chunk_index).unlink(missing_ok=True)

    def delete_upload(self, upload_id: str) -> None:
        upload_dir = self.root / upload_id
        if upload_dir.exists():
            shutil.rmtree(upload_dir)


class LocalObjectStore:
    """Final assembled objects, published by atomic rename from ``.incoming``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.incoming = self.root / INCOMING_DIRNAME
        self.incoming.mkdir(parents=True, exist_ok=True)

    def object_path(self, object_id: str) -> Path:
        return self.root / object_id

    def incoming_path(self, object_id: str) -> Path:
        return self.incoming / f"{object_id}.{uuid.uuid4().hex}.part"

    def object_size(self, object_id: str) -> int | None:
        path = self.object_path(object_id)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return stat.st_size

    def open_object(self, object_id: str) -> BinaryIO:
        return self.object_path(object_id).open("rb")

    def publish(self, temp_path: Path, object_id: str) -> Path:
        target = self.object_path(object_id)
        os.replace(temp_path, target)
        return target

    def delete_object(self, object_id: str) -> None:
        self.object_path(object_id).unlink(missing_ok=True)


class S3ObjectStore:
    """Off-disk copy of assembled objects for deployments that need one."""

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        key_prefix: str = "media/",
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.key_prefix = key_prefix
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def object_key(self, object_id: str) -> str:
        return f"{self.key_prefix}{object_id}"

    def put_file(self, path: str | Path, object_id: str, content_type: str) -> str:
        key = self.object_key(object_id)
        self.client.upload_file(str(path), self.bucket, key, ExtraArgs={"ContentType": content_type})
        return key

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_durable_store(config: Settings) -> S3ObjectStore | None:
    backend = config.durable_backend.lower()
    if backend in ("", "none", "local"):
        return None
    if backend == "s3":
        return S3ObjectStore(config.s3_bucket, config.aws_region, key_prefix=config.durable_key_prefix)
    if backend == "r2":
        if not config.r2_bucket:
            raise ValueError("r2_bucket must be set when durable_backend=r2")
        endpoint_url = config.r2_endpoint_url
        if not endpoint_url:
            if not config.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when durable_backend=r2")
            endpoint_url = f"https://{config.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectStore(
            bucket=config.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=config.r2_access_key_id or None,
            secret_access_key=config.r2_secret_access_key or None,
            key_prefix=config.durable_key_prefix,
        )
    raise ValueError(f"unsupported durable backend: {config.durable_backend}")
