"""Holds the parsed source PDF, tagged with the fingerprint it was built from.

At most one handle is alive. The cache is told which fingerprint is
current via ``track``; a handle built for any other fingerprint is
released and never returned. Concurrent first loads share a single read
and parse.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from pathlib import Path

from pypdf import PdfReader

from pdfpager.coalescer import InFlightCoalescer
from pdfpager.fingerprint import Fingerprint
from pdfpager.pdf_utils import extract_page, get_total_pages, load_document

log = logging.getLogger(__name__)


class SourceDocument:
    """A parsed source PDF. Shared by reference, never mutated by callers."""

    def __init__(self, fingerprint: Fingerprint, reader: PdfReader, size: int):
        self.fingerprint = fingerprint
        self.reader = reader
        self.size = size
        self.page_count = get_total_pages(reader)
        # PdfReader seeks a single underlying stream; reads must not interleave.
        self._lock = threading.Lock()
        self.closed = False

    def extract(self, page_num: int, extractor: Callable[[PdfReader, int], bytes] = extract_page) -> bytes:
        with self._lock:
            if self.closed:
                raise RuntimeError("source document is closed")
            try:
                return extractor(self.reader, page_num)
            finally:
                # close() ran while we held the lock and left the stream to us
                if self.closed:
                    self.reader.stream.close()

    def close(self) -> None:
        """Mark the handle closed without waiting on a running extraction.

        The stream is released here if no extraction holds the lock,
        otherwise by that extraction when it finishes.
        """
        self.closed = True
        if self._lock.acquire(blocking=False):
            try:
                self.reader.stream.close()
            finally:
                self._lock.release()


class StaleSourceError(RuntimeError):
    """Raised when the tracked fingerprint changed while the source was loading."""


class SourceCache:
    def __init__(self, path: Path | str, loader: Callable[[bytes], PdfReader] = load_document):
        self.path = Path(path)
        self.fingerprint: Fingerprint | None = None
        self._loader = loader
        self._current: SourceDocument | None = None
        self._loads = InFlightCoalescer()

    def track(self, fingerprint: Fingerprint) -> None:
        """Make ``fingerprint`` the current version, releasing a handle built for another."""
        self.fingerprint = fingerprint
        if self._current is not None and self._current.fingerprint != fingerprint:
            self._release()

    async def get(self) -> SourceDocument:
        fingerprint = self.fingerprint
        if fingerprint is None:
            raise RuntimeError("SourceCache.track() has not been called")
        current = self._current
        if current is not None and current.fingerprint == fingerprint:
            return current
        return await self._loads.run(fingerprint, lambda: self._populate(fingerprint))

    async def _populate(self, fingerprint: Fingerprint) -> SourceDocument:
        log.info("Loading source PDF %s", self.path)
        doc = await asyncio.to_thread(self._load, fingerprint)
        if fingerprint != self.fingerprint:
            doc.close()
            raise StaleSourceError(f"{self.path} changed version while loading")
        log.info("Loaded %s: %d pages, %d bytes", self.path.name, doc.page_count, doc.size)
        self._release()
        self._current = doc
        return doc

    def _load(self, fingerprint: Fingerprint) -> SourceDocument:
        pdf_bytes = self.path.read_bytes()
        return SourceDocument(fingerprint, self._loader(pdf_bytes), len(pdf_bytes))

    def _release(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None

    def close(self) -> None:
        self._release()

    @property
    def current(self) -> SourceDocument | None:
        return self._current
