from collections.abc import Callable, Iterator
from dataclasses import dataclass

from media_server.errors import InvalidRequest, ObjectNotFound, RangeNotSatisfiable
from media_server.metrics import bytes_streamed_total, stream_requests_total
from media_server.ranges import FullContent, resolve_range
from media_server.storage import LocalObjectStore, guess_content_type, validate_upload_id

ServedHook = Callable[[str, int], None]


@dataclass
class StreamResult:
    status_code: int
    headers: dict[str, str]
    body: Iterator[bytes]


class StreamServer:
    def __init__(
        self,
        object_store: LocalObjectStore,
        block_size: int = 64 * 1024,
        default_content_type: str = "video/mp4",
    ) -> None:
        self.object_store = object_store
        self.block_size = block_size
        self.default_content_type = default_content_type

    def serve(
        self,
        object_id: str,
        range_header: str | None = None,
        on_served: ServedHook | None = None,
    ) -> StreamResult:
        """Resolve ``range_header`` against the stored object and build the response.

        The object is only opened when ``body`` is iterated. ``on_served`` runs
        for 200 and 206 results, never for 416.
        """
        try:
            total_length = self.object_store.object_size(validate_upload_id(object_id))
        except InvalidRequest:
            total_length = None
        if total_length is None:
            stream_requests_total.labels(status_code="404").inc()
            raise ObjectNotFound("object not found")

        content_type = guess_content_type(object_id, self.default_content_type)
        try:
            resolved = resolve_range(range_header, total_length)
        except RangeNotSatisfiable as exc:
            stream_requests_total.labels(status_code="416").inc()
            return StreamResult(status_code=416, headers={"Accept-Ranges": "bytes", **exc.headers}, body=iter(()))

        headers = {"Accept-Ranges": "bytes", "Content-Type": content_type}
        if isinstance(resolved, FullContent):
            status_code, start, length = 200, 0, total_length
        else:
            status_code, start, length = 206, resolved.start, resolved.length
            headers["Content-Range"] = resolved.content_range
        headers["Content-Length"] = str(length)

        stream_requests_total.labels(status_code=str(status_code)).inc()
        if on_served is not None:
            on_served(object_id, status_code)
        return StreamResult(status_code=status_code, headers=headers, body=self._read_window(object_id, start, length))

    def _read_window(self, object_id: str, start: int, length: int) -> Iterator[bytes]:
        with self.object_store.open_object(object_id) as source:
            source.seek(start)
            remaining = length
            while remaining > 0:
                block = source.read(min(self.block_size, remaining))
                if not block:
                    break
                remaining -= len(block)
                bytes_streamed_total.inc(len(block))
                yield block
