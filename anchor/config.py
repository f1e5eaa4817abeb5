"""Environment-derived settings."""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_DEV_SECRET = "anchor-dev-secret-change-me"

AUTOSAVE_DELAY = 1.0
NOTES_PER_PAGE = 10
MAX_PAGE_SIZE = 100
PREVIEW_CHARS = 50
TICK_INTERVAL = 10.0


class Settings(BaseModel):
    session_secret: str = _DEV_SECRET
    session_max_age: int = 60 * 60 * 24
    env: str = "development"
    page_size: int = Field(default=NOTES_PER_PAGE, ge=1, le=MAX_PAGE_SIZE)
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3000

    @property
    def https_only(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        secret = os.getenv("ANCHOR_SESSION_SECRET")
        if not secret:
            logger.warning("ANCHOR_SESSION_SECRET is not set; using the development secret")
            secret = _DEV_SECRET
        page_size = int(os.getenv("ANCHOR_PAGE_SIZE", str(NOTES_PER_PAGE)))
        return cls(
            session_secret=secret,
            session_max_age=int(os.getenv("ANCHOR_SESSION_MAX_AGE", str(60 * 60 * 24))),
            env=(os.getenv("ANCHOR_ENV") or "development").strip().lower(),
            page_size=min(max(1, page_size), MAX_PAGE_SIZE),
            log_level=(os.getenv("ANCHOR_LOG_LEVEL") or "INFO").upper(),
            host=os.getenv("ANCHOR_HOST", "127.0.0.1"),
            port=int(os.getenv("ANCHOR_PORT") or os.getenv("PORT", "3000")),
        )


__all__ = ["Settings"]
