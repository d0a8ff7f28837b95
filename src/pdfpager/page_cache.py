"""In-memory LRU cache for derived single-page PDFs.

Keyed by (fingerprint, page_num). Bounded by entry count only: once
``capacity`` entries are resident, inserting a new key evicts the entry
that was least recently read or written. There is no TTL and no byte
accounting; eviction happens only inside ``put``.

Cache is lost on process restart.
"""
from __future__ import annotations

import threading
from collections import OrderedDict
from typing import NamedTuple

from pdfpager.fingerprint import Fingerprint

DEFAULT_CAPACITY = 64


class PageKey(NamedTuple):
    fingerprint: Fingerprint
    page: int


class PageCache:
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[PageKey, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: PageKey) -> bytes | None:
        with self._lock:
            artifact = self._entries.get(key)
            if artifact is not None:
                self._entries.move_to_end(key)
            return artifact

    def put(self, key: PageKey, artifact: bytes) -> None:
        with self._lock:
            self._entries[key] = artifact
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> int:
        """Drop every entry and return how many there were."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> list[PageKey]:
        """Resident keys, least recently used first."""
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
