"""Single byte-range resolution for ``Range`` request headers.

Only ``bytes=<start>-<end>``, ``bytes=<start>-`` and the suffix form
``bytes=-<n>`` are served. A multi-range header is ignored and the whole object
is returned, which RFC 7233 allows.
"""

import re
from dataclasses import dataclass

from media_server.errors import RangeNotSatisfiable

_RANGE_SPEC = re.compile(r"^([0-9]*)-([0-9]*)$")


@dataclass(frozen=True)
class RangeWindow:
    start: int
    end: int
    total_length: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total_length}"


@dataclass(frozen=True)
class FullContent:
    total_length: int


def resolve_range(range_header: str | None, total_length: int) -> RangeWindow | FullContent:
    if range_header is None or not range_header.strip():
        return FullContent(total_length)

    unit, separator, spec = range_header.strip().partition("=")
    if not separator or unit.strip().lower() != "bytes":
        raise RangeNotSatisfiable(total_length, "unsupported range unit")
    spec = spec.strip()
    if "," in spec:
        return FullContent(total_length)

    match = _RANGE_SPEC.match(spec)
    if not match or spec == "-":
        raise RangeNotSatisfiable(total_length, "invalid range format")
    first, last = match.groups()

    if not first:
        suffix = int(last)
        if suffix == 0 or total_length == 0:
            raise RangeNotSatisfiable(total_length, "empty suffix range")
        return RangeWindow(start=max(0, total_length - suffix), end=total_length - 1, total_length=total_length)

    start = int(first)
    end = int(last) if last else total_length - 1
    if start >= total_length:
        raise RangeNotSatisfiable(total_length, "range start beyond object length")
    if start > end:
        raise RangeNotSatisfiable(total_length, "range start after range end")
    return RangeWindow(start=start, end=min(end, total_length - 1), total_length=total_length)
