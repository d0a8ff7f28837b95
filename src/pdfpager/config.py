from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_ROOT_DIR = Path(__file__).parent.parent.parent
DEFAULT_PDF_PATH = _ROOT_DIR / "assets" / "document.pdf"


class Settings(BaseModel):
    """Process-wide configuration, read once from the environment."""

    pdf_path: Path = DEFAULT_PDF_PATH
    page_cache_size: int = Field(default=64, ge=1)
    environment: str = "development"
    request_timeout: float = Field(default=15.0, gt=0)
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> Settings:
        load_dotenv()
        return cls(
            pdf_path=Path(os.environ.get("PDF_PATH", DEFAULT_PDF_PATH)).resolve(),
            page_cache_size=os.environ.get("PAGE_CACHE_SIZE", 64),
            environment=os.environ.get("PDFPAGER_ENVIRONMENT", "development"),
            request_timeout=os.environ.get("REQUEST_TIMEOUT_S", 15.0),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=os.environ.get("PORT", 8000),
        )
