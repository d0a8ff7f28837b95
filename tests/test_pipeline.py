"""Tests for pipeline — PageService derivation, coalescing, warm-up."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import pytest

from pdfpager.config import Settings
from pdfpager.fingerprint import Fingerprint
from pdfpager.page_cache import PageKey
from pdfpager.pdf_utils import load_document
from pdfpager.pipeline import DerivationError, PageOutOfRangeError, PageService, StaleFingerprintError

from conftest import CountingExtractor


async def _started(settings: Settings, extractor: CountingExtractor, warm_up: bool = False) -> PageService:
    service = PageService(settings, extractor=extractor)
    await service.start(warm_up=warm_up)
    return service


class TestDeriveOrFetch:

    @pytest.mark.asyncio
    async def test_fifty_concurrent_requests_derive_once(self, settings: Settings):
        extractor = CountingExtractor(delay=0.05)
        service = await _started(settings, extractor)
        try:
            results = await asyncio.gather(
                *(service.derive_or_fetch(service.fingerprint, 3) for _ in range(50))
            )
            assert extractor.calls[3] == 1
            assert len(set(results)) == 1
            assert service.derivations == 1
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_second_request_is_a_cache_hit(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor)
        try:
            first = await service.get_page(1)
            second = await service.get_page(1)
            assert first == second
            assert extractor.calls[1] == 1
            assert service.hits == 1
            assert service.misses == 1
            assert len(load_document(first).pages) == 1
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_hit_does_not_touch_source_cache(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor)
        try:
            await service.get_page(2)

            async def unexpected():
                raise AssertionError("source cache consulted on a hit")

            service.source_cache.get = unexpected
            assert await service.get_page(2)
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_failure_is_not_sticky(self, settings: Settings):
        extractor = CountingExtractor(fail_times=1)
        service = await _started(settings, extractor)
        try:
            with pytest.raises(DerivationError) as exc_info:
                await service.derive_or_fetch(service.fingerprint, 7)
            assert exc_info.value.page == 7
            assert isinstance(exc_info.value.__cause__, ValueError)
            assert not service.is_in_flight(service.fingerprint, 7)
            assert PageKey(service.fingerprint, 7) not in service.page_cache

            artifact = await service.derive_or_fetch(service.fingerprint, 7)
            assert len(load_document(artifact).pages) == 1
            assert extractor.calls[7] == 2
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_concurrent_waiters_share_the_failure(self, settings: Settings):
        extractor = CountingExtractor(fail_times=1, delay=0.05)
        service = await _started(settings, extractor)
        try:
            results = await asyncio.gather(
                *(service.get_page(4) for _ in range(10)), return_exceptions=True
            )
            assert extractor.calls[4] == 1
            assert all(isinstance(r, DerivationError) for r in results)
        finally:
            await service.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page", [0, -1, 11, True, "3", 2.0])
    async def test_out_of_range_pages_rejected(self, settings: Settings, extractor: CountingExtractor, page):
        service = await _started(settings, extractor)
        try:
            with pytest.raises(PageOutOfRangeError):
                await service.derive_or_fetch(service.fingerprint, page)
            assert extractor.total == 0
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_stale_fingerprint_is_rejected(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor)
        try:
            current_doc = service.source_cache.current
            bogus = Fingerprint(digest="0" * 40, size=1)

            with pytest.raises(StaleFingerprintError):
                await service.derive_or_fetch(bogus, 2)

            assert extractor.total == 0
            assert service.source_cache.current is current_doc
            assert service.source_cache.current.fingerprint == service.fingerprint
            assert not current_doc.closed
            assert PageKey(bogus, 2) not in service.page_cache
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor)
        try:
            for page in range(1, 7):
                await service.get_page(page)
            assert len(service.page_cache) == settings.page_cache_size
            assert PageKey(service.fingerprint, 1) not in service.page_cache

            await service.get_page(1)
            assert extractor.calls[1] == 2
        finally:
            await service.close()


class TestStartup:

    @pytest.mark.asyncio
    async def test_start_learns_fingerprint_and_page_count(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor)
        try:
            assert service.page_count == 10
            info = service.info()
            assert info.file_name == "document.pdf"
            assert info.file_size == settings.pdf_path.stat().st_size
            assert info.fingerprint == str(service.fingerprint)
            assert info.page_count == 10
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_missing_source_is_fatal(self, tmp_path: Path):
        service = PageService(Settings(pdf_path=tmp_path / "missing.pdf"))
        with pytest.raises(OSError):
            await service.start()

    @pytest.mark.asyncio
    async def test_malformed_source_leaves_page_count_unknown(self, tmp_path: Path, extractor: CountingExtractor):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")
        service = await _started(Settings(pdf_path=path), extractor, warm_up=True)
        try:
            assert service.page_count is None
            assert service.warmup_task is None
            with pytest.raises(DerivationError):
                await service.get_page(1)
        finally:
            await service.close()


class TestWarmUp:

    @pytest.mark.asyncio
    async def test_warm_up_caches_page_one(self, settings: Settings, extractor: CountingExtractor):
        service = await _started(settings, extractor, warm_up=True)
        try:
            await service.warmup_task
            assert PageKey(service.fingerprint, 1) in service.page_cache
            await service.get_page(1)
            assert extractor.calls[1] == 1
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_warm_up_failure_is_logged_not_raised(self, settings: Settings, caplog):
        extractor = CountingExtractor(fail_times=10**6)
        caplog.set_level(logging.ERROR, logger="pdfpager.pipeline")
        service = await _started(settings, extractor, warm_up=True)
        try:
            await service.warmup_task
            assert "Warm-up of page 1 failed" in caplog.text
            assert not service.is_in_flight(service.fingerprint, 1)
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_warm_up(self, settings: Settings):
        extractor = CountingExtractor(delay=0.2)
        service = await _started(settings, extractor, warm_up=True)
        await service.close()
        assert service.warmup_task.done()
        assert service.source_cache.current is None
        assert len(service.page_cache) == 0


class TestClose:

    @pytest.mark.asyncio
    async def test_close_does_not_block_on_running_extraction(self, settings: Settings):
        extractor = CountingExtractor(delay=0.5)
        service = await _started(settings, extractor)
        pending = asyncio.create_task(service.get_page(3))
        while extractor.calls[3] == 0:
            await asyncio.sleep(0.01)
        doc = service.source_cache.current

        t0 = time.monotonic()
        await service.close()
        assert time.monotonic() - t0 < 0.2
        assert doc.closed
        with pytest.raises(asyncio.CancelledError):
            await pending


@pytest.mark.asyncio
async def test_stats(settings: Settings, extractor: CountingExtractor):
    service = await _started(settings, extractor)
    try:
        await service.get_page(1)
        await service.get_page(1)
        stats = service.stats()
        assert stats.size == 1
        assert stats.capacity == 4
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.derivations == 1
        assert stats.in_flight == 0
    finally:
        await service.close()
