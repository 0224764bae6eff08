"""Domain models for place records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CrawlStatus(str, Enum):
    """Place crawl lifecycle states."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(slots=True)
class PlaceView:
    """Readable place row."""

    place_id: int
    name: str
    crawl_status: str
    created_at: datetime
    updated_at: datetime
