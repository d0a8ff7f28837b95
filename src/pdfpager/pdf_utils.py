from __future__ import annotations

import io

from pypdf import PdfReader, PdfWriter


def load_document(pdf_bytes: bytes) -> PdfReader:
    """Parse PDF bytes into a reader. Raises pypdf errors on malformed input."""
    return PdfReader(io.BytesIO(pdf_bytes))


def get_total_pages(reader: PdfReader) -> int:
    """Return total page count of a parsed PDF."""
    return len(reader.pages)


def extract_page(reader: PdfReader, page_num: int) -> bytes:
    """Copy page ``page_num`` (1-indexed) into a new standalone PDF."""
    if not 1 <= page_num <= len(reader.pages):
        raise IndexError(f"page {page_num} outside 1..{len(reader.pages)}")

    writer = PdfWriter()
    writer.add_page(reader.pages[page_num - 1])

    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()
