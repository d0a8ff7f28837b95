from __future__ import annotations

import re
from typing import NamedTuple

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class ByteRange(NamedTuple):
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_range(header: str | None, file_size: int) -> ByteRange | None:
    """Parse a single-range ``Range`` header against a file of ``file_size`` bytes.

    Supports ``bytes=start-end``, ``bytes=start-`` and ``bytes=-suffix``.
    Returns None for a missing, malformed or unsatisfiable header, in which
    case the caller serves the whole file.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if match is None:
        return None

    start_s, end_s = match.groups()
    if not start_s and not end_s:
        return None

    if not start_s:
        suffix = int(end_s)
        if suffix <= 0:
            return None
        start, end = max(0, file_size - suffix), file_size - 1
    else:
        start = int(start_s)
        end = int(end_s) if end_s else file_size - 1

    if start > end or end >= file_size:
        return None
    return ByteRange(start, end)
