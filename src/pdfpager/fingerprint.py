"""Content-addressed identity for the source PDF.

The fingerprint is a SHA-1 digest of the file's bytes. Size and
modification time are carried along for the info endpoint and the
Last-Modified header, but only the content decides equality.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class Fingerprint:
    digest: str
    size: int
    mtime: float = field(default=0.0, compare=False)

    def __str__(self) -> str:
        return f'W/"{self.digest}"'

    def page_etag(self, page_num: int) -> str:
        """Weak ETag for one derived page of this document version."""
        return f'W/"{self.digest}-p{page_num}"'


def compute_fingerprint(path: Path | str) -> Fingerprint:
    """Hash the file at ``path``. Raises OSError if it cannot be read or stat'd."""
    path = Path(path)
    stat = path.stat()
    digest = hashlib.sha1()
    size = 0
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
            size += len(chunk)
    return Fingerprint(digest=digest.hexdigest(), size=size, mtime=stat.st_mtime)
