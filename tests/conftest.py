"""Shared fixtures: generated PDFs on disk and a call-counting page extractor."""

from __future__ import annotations

import threading
import time
from collections import Counter
from pathlib import Path

import pytest
from pypdf import PdfReader, PdfWriter

from pdfpager.config import Settings
from pdfpager.pdf_utils import extract_page


def write_pdf(path: Path, pages: int = 10) -> Path:
    """Write a PDF of blank pages; page i is 200+i points wide."""
    writer = PdfWriter()
    for i in range(pages):
        writer.add_blank_page(width=200 + i, height=300)
    with path.open("wb") as f:
        writer.write(f)
    return path


class CountingExtractor:
    """Wraps extract_page, counting calls per page.

    ``fail_times`` makes the first N calls raise; ``delay`` sleeps inside
    the worker thread before extracting.
    """

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.calls: Counter[int] = Counter()
        self._lock = threading.Lock()

    def __call__(self, reader: PdfReader, page_num: int) -> bytes:
        with self._lock:
            self.calls[page_num] += 1
            should_fail = self.total <= self.fail_times
        if self.delay:
            time.sleep(self.delay)
        if should_fail:
            raise ValueError(f"simulated failure on page {page_num}")
        return extract_page(reader, page_num)

    @property
    def total(self) -> int:
        return sum(self.calls.values())


@pytest.fixture
def pdf_path(tmp_path: Path) -> Path:
    return write_pdf(tmp_path / "document.pdf", pages=10)


@pytest.fixture
def settings(pdf_path: Path) -> Settings:
    return Settings(pdf_path=pdf_path, page_cache_size=4)


@pytest.fixture
def extractor() -> CountingExtractor:
    return CountingExtractor()
