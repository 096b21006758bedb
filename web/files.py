"""Static file responses for the mirror tree.

Handles safe path resolution under a root directory and single-range
``Range: bytes=`` requests.
"""

from __future__ import annotations

import mimetypes
import re
from collections.abc import Iterator
from pathlib import Path

from fastapi import HTTPException, Request, Response
from fastapi import status as http_status
from fastapi.responses import StreamingResponse

CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r"bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(Exception):
    """Raised when a well-formed range lies entirely outside the file."""

    def __init__(self, size: int, code: str = "range_not_satisfiable") -> None:
        """Initialize RangeNotSatisfiable.

        Args:
            size: Size of the requested file in bytes.
            code: Error code for structured error handling.
        """
        super().__init__(f"Range not satisfiable for {size} bytes")
        self.size = size
        self.code = code


def parse_range(header: str | None, size: int) -> tuple[int, int] | None:
    """Parse a single ``bytes=start-end`` range.

    Args:
        header: Value of the Range header, if any.
        size: Size of the file in bytes.

    Returns:
        Inclusive (start, end) offsets, or None to serve the whole file
        (no header, malformed header or multiple ranges).

    Raises:
        RangeNotSatisfiable: If the range starts beyond the end of the file
            or the file is empty.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if not match:
        return None
    start_s, end_s = match.groups()
    if start_s == "" and end_s == "":
        return None
    if size == 0:
        # no byte of an empty file can be addressed
        raise RangeNotSatisfiable(size)
    if start_s == "":
        # suffix length
        length = int(end_s)
        if length == 0:
            raise RangeNotSatisfiable(size)
        return max(0, size - length), size - 1
    start = int(start_s)
    if start >= size:
        raise RangeNotSatisfiable(size)
    end = size - 1 if end_s == "" else int(end_s)
    if end < start:
        return None
    return start, min(end, size - 1)


def resolve_under(root: Path, relative: str) -> Path:
    """Resolve a request path below root.

    Components that are empty, relative or hidden (leading dot) are refused,
    as is anything that resolves outside root through a symlink.

    Raises:
        HTTPException: 404 if the path is refused or is not a regular file.
    """
    parts = relative.split("/")
    if not relative or any(p in ("", ".", "..") or p.startswith(".") for p in parts):
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)
    root = root.resolve()
    path = root.joinpath(*parts).resolve()
    if not path.is_relative_to(root) or not path.is_file():
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)
    return path


def _iter_file(path: Path, start: int, length: int) -> Iterator[bytes]:
    with path.open("rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            chunk = f.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def file_response(request: Request, path: Path) -> Response:
    """Build a GET/HEAD response for a file, honoring a single byte range.

    Args:
        request: Incoming request (method and Range header are used).
        path: File to send.

    Returns:
        200 or 206 response; 416 with ``Content-Range: bytes */size`` when the
        range cannot be satisfied.
    """
    size = path.stat().st_size
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    headers = {"Accept-Ranges": "bytes"}

    try:
        byte_range = parse_range(request.headers.get("range"), size)
    except RangeNotSatisfiable:
        headers["Content-Range"] = f"bytes */{size}"
        return Response(
            status_code=http_status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            headers=headers,
        )

    if byte_range is None:
        start, length = 0, size
        status_code = http_status.HTTP_200_OK
    else:
        start, end = byte_range
        length = end - start + 1
        status_code = http_status.HTTP_206_PARTIAL_CONTENT
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(length)

    if request.method == "HEAD":
        return Response(status_code=status_code, headers=headers, media_type=media_type)
    return StreamingResponse(
        _iter_file(path, start, length),
        status_code=status_code,
        headers=headers,
        media_type=media_type,
    )


__all__ = ["RangeNotSatisfiable", "file_response", "parse_range", "resolve_under"]
