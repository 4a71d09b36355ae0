import logging
import os
from email.utils import formatdate

from fastapi.responses import Response, StreamingResponse

from engine.errors import ArtifactNotFound, RangeUnsatisfiable
from media.ranges import parse_range_header

logger = logging.getLogger(__name__)

FILE_CHUNK_SIZE = 1024 * 1024

_MEDIA_TYPES = {
    ".webm": "video/webm",
    ".flv": "video/x-flv",
}


def media_type_for(filename):
    _, ext = os.path.splitext(filename or "")
    return _MEDIA_TYPES.get(ext.lower(), "video/mp4")


def _iter_file_range(path, start, length, chunk_size=FILE_CHUNK_SIZE):
    remaining = length
    with open(path, "rb") as handle:
        handle.seek(start)
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def serve_file(path, range_header, media_type):
    """Answer with ``path``, honouring a single-range ``Range`` header."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise ArtifactNotFound(f"artifact vanished: {os.path.basename(path)}") from None

    size = st.st_size
    headers = {
        "Accept-Ranges": "bytes",
        "Last-Modified": formatdate(st.st_mtime, usegmt=True),
    }
    try:
        byte_range = parse_range_header(range_header, size)
    except RangeUnsatisfiable as exc:
        logger.info("Range not satisfiable path=%s range=%s: %s", path, range_header, exc)
        return Response(
            status_code=416,
            headers={"Accept-Ranges": "bytes", "Content-Range": f"bytes */{size}"},
        )

    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(_iter_file_range(path, 0, size), media_type=media_type, headers=headers)

    headers["Content-Length"] = str(byte_range.length)
    headers["Content-Range"] = byte_range.content_range
    return StreamingResponse(
        _iter_file_range(path, byte_range.start, byte_range.length),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )
