"""Derivation of single-page PDFs from the source document.

A page request resolves in this order: page cache hit, then attach to an
in-flight derivation of the same page, then start a new derivation. At
most one derivation per (fingerprint, page) runs at a time and a failed
derivation leaves nothing behind, so the next request retries it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

import logfire
from pypdf import PdfReader

from pdfpager.coalescer import InFlightCoalescer
from pdfpager.config import Settings
from pdfpager.fingerprint import Fingerprint, compute_fingerprint
from pdfpager.models import CacheStats, DocumentInfo
from pdfpager.page_cache import PageCache, PageKey
from pdfpager.pdf_utils import extract_page
from pdfpager.source_cache import SourceCache

log = logging.getLogger(__name__)


class PageOutOfRangeError(ValueError):
    """Raised when a page number is not a valid 1-based index of the document."""

    def __init__(self, page: object, page_count: int | None):
        self.page = page
        self.page_count = page_count
        super().__init__(f"Invalid page number {page!r} (document has {page_count} pages)")


class DerivationError(RuntimeError):
    """Raised when the source cannot be loaded or the page cannot be extracted."""

    def __init__(self, page: int, cause: BaseException):
        self.page = page
        super().__init__(f"Failed to extract page {page}: {cause}")


class StaleFingerprintError(LookupError):
    """Raised when a page is requested for a document version that is not being served."""

    def __init__(self, fingerprint: Fingerprint, current: Fingerprint | None):
        self.fingerprint = fingerprint
        self.current = current
        super().__init__(f"Fingerprint {fingerprint} is not the current version {current}")


class PageService:
    """Owns the fingerprint, both caches and the in-flight map for one PDF."""

    def __init__(
        self,
        settings: Settings,
        source_cache: SourceCache | None = None,
        page_cache: PageCache | None = None,
        extractor: Callable[[PdfReader, int], bytes] = extract_page,
    ):
        self.settings = settings
        self.path = Path(settings.pdf_path)
        self.source_cache = source_cache or SourceCache(self.path)
        self.page_cache = page_cache or PageCache(settings.page_cache_size)
        self._extractor = extractor
        self._inflight = InFlightCoalescer()
        self.fingerprint: Fingerprint | None = None
        self.page_count: int | None = None
        self.warmup_task: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0
        self.derivations = 0

    async def start(self, warm_up: bool = True) -> None:
        """Fingerprint the source, learn its page count and warm page 1.

        Raises:
            OSError: If the source file cannot be read.
        """
        self.fingerprint = await asyncio.to_thread(compute_fingerprint, self.path)
        log.info("Fingerprinted %s: %s (%d bytes)", self.path, self.fingerprint, self.fingerprint.size)
        self.source_cache.track(self.fingerprint)

        try:
            doc = await self.source_cache.get()
        except OSError:
            raise
        except Exception:
            log.exception("Unable to determine page count for %s", self.path)
            self.page_count = None
        else:
            self.page_count = doc.page_count

        if warm_up and self.page_count:
            self.warmup_task = asyncio.create_task(self.warm_up())

    async def warm_up(self) -> None:
        """Best-effort derivation of page 1. Never raises."""
        try:
            await self.derive_or_fetch(self.fingerprint, 1)
        except Exception:
            log.exception("Warm-up of page 1 failed")
        else:
            log.info("Warmed page 1 of %s", self.path.name)

    async def get_page(self, page: int) -> bytes:
        if self.fingerprint is None:
            raise RuntimeError("PageService.start() has not been called")
        return await self.derive_or_fetch(self.fingerprint, page)

    async def derive_or_fetch(self, fingerprint: Fingerprint, page: int) -> bytes:
        """Return the single-page PDF for ``page`` of the ``fingerprint`` version.

        Raises:
            PageOutOfRangeError: If ``page`` is not an int within 1..page_count.
            StaleFingerprintError: If ``fingerprint`` is not the version being served.
            DerivationError: If loading the source or extracting the page fails.
        """
        self.check_page(page)
        if fingerprint != self.fingerprint:
            raise StaleFingerprintError(fingerprint, self.fingerprint)
        key = PageKey(fingerprint, page)

        artifact = self.page_cache.get(key)
        if artifact is not None:
            self.hits += 1
            return artifact

        self.misses += 1
        return await self._inflight.run(key, lambda: self._derive(key))

    def check_page(self, page: object) -> None:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise PageOutOfRangeError(page, self.page_count)
        if self.page_count is not None and page > self.page_count:
            raise PageOutOfRangeError(page, self.page_count)

    async def _derive(self, key: PageKey) -> bytes:
        self.derivations += 1
        with logfire.span("derive page {page}", page=key.page):
            try:
                doc = await self.source_cache.get()
                artifact = await asyncio.to_thread(doc.extract, key.page, self._extractor)
            except Exception as exc:
                log.error("Failed to extract page %d: %r", key.page, exc)
                raise DerivationError(key.page, exc) from exc
        self.page_cache.put(key, artifact)
        log.debug("Cached page %d (%d bytes)", key.page, len(artifact))
        return artifact

    def is_in_flight(self, fingerprint: Fingerprint, page: int) -> bool:
        return PageKey(fingerprint, page) in self._inflight

    def source_exists(self) -> bool:
        return self.path.is_file()

    def info(self) -> DocumentInfo:
        return DocumentInfo(
            file_name=self.path.name,
            file_size=self.fingerprint.size,
            last_modified=int(self.fingerprint.mtime * 1000),
            fingerprint=str(self.fingerprint),
            page_count=self.page_count,
        )

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self.page_cache),
            capacity=self.page_cache.capacity,
            hits=self.hits,
            misses=self.misses,
            derivations=self.derivations,
            in_flight=len(self._inflight),
        )

    async def close(self) -> None:
        """Cancel background work and release both caches."""
        if self.warmup_task is not None and not self.warmup_task.done():
            self.warmup_task.cancel()
            try:
                await self.warmup_task
            except asyncio.CancelledError:
                pass
        self._inflight.cancel_all()
        self.source_cache.close()
        self.page_cache.clear()
