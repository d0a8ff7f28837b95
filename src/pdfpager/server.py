from __future__ import annotations

import os

from dotenv import load_dotenv
load_dotenv()

import logfire
logfire.configure(
    service_name="pdfpager-server",
    environment=os.environ.get("PDFPAGER_ENVIRONMENT", "development"),
    send_to_logfire="if-token-present",
)

import asyncio
import logging
import re
from collections.abc import Iterator
from contextlib import asynccontextmanager
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.routing import APIRoute

from pdfpager.byte_range import parse_range
from pdfpager.config import Settings
from pdfpager.models import CacheStats, DocumentInfo, ErrorResponse
from pdfpager.pipeline import DerivationError, PageOutOfRangeError, PageService

logging.basicConfig(level=logging.INFO, handlers=[logfire.LogfireLoggingHandler()])
log = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
# Integral forms only: "5", "+5", "-3", "5.0"
_PAGE_RE = re.compile(r"([+-]?[0-9]+)(?:\.0*)?")
_STREAM_CHUNK_SIZE = 64 * 1024


class TimeoutRoute(APIRoute):
    """Route that answers 504 when its handler outlives ``settings.request_timeout``.

    Only the handler is cancelled; a derivation it was waiting on keeps
    running for any other waiters. Streaming bodies are not covered once
    the response has started.
    """

    def get_route_handler(self):
        handler = super().get_route_handler()

        async def timed_handler(request: Request) -> Response:
            timeout = request.app.state.settings.request_timeout
            try:
                return await asyncio.wait_for(handler(request), timeout)
            except asyncio.TimeoutError:
                log.warning("Request timed out after %.2fs: %s", timeout, request.url.path)
                return _error(504, "Request timed out", code="TIMEOUT")

        return timed_handler


router = APIRouter(route_class=TimeoutRoute)


def _get_service(request: Request) -> PageService:
    return request.app.state.service


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=message, **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def _etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    candidates = [c.strip() for c in if_none_match.split(",")]
    return "*" in candidates or etag in candidates


def _not_modified_since(if_modified_since: str | None, mtime: float) -> bool:
    if not if_modified_since:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        return False
    # HTTP dates carry whole seconds only
    return since.timestamp() >= int(mtime)


def _iter_file(path: Path, start: int, length: int) -> Iterator[bytes]:
    with path.open("rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            chunk = f.read(min(_STREAM_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@router.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Document routes
# ---------------------------------------------------------------------------
@router.get("/document/info", response_model=DocumentInfo)
async def document_info(service: PageService = Depends(_get_service)):
    """File name, size, mtime, fingerprint and page count of the source PDF."""
    if not service.source_exists():
        return _error(404, "PDF not found")
    return service.info()


@router.get("/document/page/{n}")
async def document_page(n: str, request: Request, service: PageService = Depends(_get_service)):
    """Serve page ``n`` (1-based) as a standalone single-page PDF."""
    if not service.source_exists():
        return _error(404, "PDF not found")

    match = _PAGE_RE.fullmatch(n)
    if match is None:
        return _error(400, "Invalid page number", total_pages=service.page_count)
    page = int(match.group(1))
    try:
        service.check_page(page)
    except PageOutOfRangeError:
        return _error(400, "Invalid page number", total_pages=service.page_count)

    settings: Settings = request.app.state.settings
    etag = service.fingerprint.page_etag(page)
    headers = {
        "ETag": etag,
        "Last-Modified": formatdate(service.fingerprint.mtime, usegmt=True),
        "Cache-Control": IMMUTABLE_CACHE_CONTROL if settings.is_production else "no-cache",
    }
    # Without a known page count the page may not exist, so never confirm it.
    if service.page_count is not None and _etag_matches(request.headers.get("if-none-match"), etag):
        return Response(status_code=304, headers=headers)

    try:
        artifact = await service.get_page(page)
    except PageOutOfRangeError:
        return _error(400, "Invalid page number", total_pages=service.page_count)
    except DerivationError:
        return _error(500, "Failed to extract page")
    return Response(content=artifact, media_type=PDF_MEDIA_TYPE, headers=headers)


@router.get("/document/stream")
async def document_stream(request: Request, service: PageService = Depends(_get_service)):
    """Whole-file transfer with single-range support."""
    if not service.source_exists():
        return _error(404, "PDF not found")

    settings: Settings = request.app.state.settings
    file_size = service.path.stat().st_size
    etag = str(service.fingerprint)
    mtime = service.fingerprint.mtime
    headers = {
        "Accept-Ranges": "bytes",
        "ETag": etag,
        "Last-Modified": formatdate(mtime, usegmt=True),
        "Cache-Control": IMMUTABLE_CACHE_CONTROL if settings.is_production else "no-store",
    }

    if _etag_matches(request.headers.get("if-none-match"), etag) or _not_modified_since(
        request.headers.get("if-modified-since"), mtime
    ):
        return Response(status_code=304, headers=headers)

    byte_range = parse_range(request.headers.get("range"), file_size)
    if byte_range is None:
        headers["Content-Length"] = str(file_size)
        return StreamingResponse(
            _iter_file(service.path, 0, file_size), media_type=PDF_MEDIA_TYPE, headers=headers
        )

    headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{file_size}"
    headers["Content-Length"] = str(byte_range.length)
    return StreamingResponse(
        _iter_file(service.path, byte_range.start, byte_range.length),
        status_code=206,
        media_type=PDF_MEDIA_TYPE,
        headers=headers,
    )


@router.get("/document/cache", response_model=CacheStats)
async def document_cache(service: PageService = Depends(_get_service)):
    """Page cache occupancy and derivation counters."""
    return service.stats()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------
def create_app(settings: Settings | None = None, service: PageService | None = None) -> FastAPI:
    """Build the app. Pass ``service`` to serve a pre-built, not yet started PageService."""
    if service is not None:
        settings = service.settings
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        page_service = service or PageService(settings)
        await page_service.start()
        app.state.service = page_service
        try:
            yield
        finally:
            await page_service.close()

    app = FastAPI(
        title="pdfpager",
        description="Serves pages of a PDF as standalone single-page PDFs",
        lifespan=lifespan,
    )
    app.state.settings = settings
    logfire.instrument_fastapi(app)
    app.include_router(router)
    return app


app = create_app()


def main():
    import uvicorn

    settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
