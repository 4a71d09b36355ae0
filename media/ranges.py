"""HTTP byte-range parsing for file responses."""

from __future__ import annotations

from dataclasses import dataclass

from engine.errors import RangeUnsatisfiable


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def parse_range_header(header: str | None, size: int) -> ByteRange | None:
    """Parse a ``Range`` header against a file of ``size`` bytes.

    Returns ``None`` when there is no header or it does not use the ``bytes``
    unit, meaning the full file should be sent. Only the first range of a
    multi-range header is honoured. An end offset past the file is clamped to
    the last byte.

    Raises:
        RangeUnsatisfiable: for malformed or suffix-only ranges, ``start > end``
            or ``start >= size``.
    """
    if not header:
        return None
    header = header.strip()
    unit, sep, ranges_part = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None

    first = ranges_part.split(",", 1)[0].strip()
    start_raw, dash, end_raw = first.partition("-")
    start_raw = start_raw.strip()
    end_raw = end_raw.strip()
    if not dash or not start_raw.isdigit() or (end_raw and not end_raw.isdigit()):
        raise RangeUnsatisfiable(f"malformed range: {header!r}")

    start = int(start_raw)
    end = int(end_raw) if end_raw else size - 1
    if start >= size or start > end:
        raise RangeUnsatisfiable(f"range {header!r} not satisfiable for size {size}")
    return ByteRange(start=start, end=min(end, size - 1), total=size)
