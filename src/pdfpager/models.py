from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentInfo(_CamelModel):
    """Response body for GET /document/info."""

    file_name: str
    file_size: int
    last_modified: int  # epoch milliseconds
    fingerprint: str  # weak validator, e.g. W/"<sha1>"
    page_count: int | None = None


class ErrorResponse(_CamelModel):
    """JSON body returned with every 4xx/5xx from the document routes."""

    error: str
    total_pages: int | None = None
    code: str | None = None


class CacheStats(_CamelModel):
    """Snapshot of the page cache and derivation counters."""

    size: int
    capacity: int
    hits: int
    misses: int
    derivations: int
    in_flight: int
