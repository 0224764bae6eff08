"""Modulo-sharded, keyset-paginated iteration over places."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass

from place_ingest.places.models import CrawlStatus, PlaceView
from place_ingest.places.repository import PlaceRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ShardPage:
    """One page of a shard: materialized places plus continuation state."""

    places: list[PlaceView]
    last_id: int | None
    has_next: bool


class ShardedPlaceReader:
    """Read the places whose id satisfies ``id % total_workers == worker_index``.

    Pages are keyed on the last seen id rather than an offset, so rows inserted or
    updated by other workers while a shard is being read never shift the window. Each
    key page is fixed first and only then materialized into full place rows. One
    extra id is probed per page to decide whether another page exists.

    Workers with distinct ``worker_index`` values and the same ``total_workers``
    read disjoint id sets whose union is the whole selection.
    """

    def __init__(
        self,
        repository: PlaceRepository,
        *,
        worker_index: int,
        total_workers: int,
        page_size: int = 100,
        crawl_status: str | None = CrawlStatus.PENDING.value,
    ) -> None:
        if total_workers < 1:
            raise ValueError("total_workers must be >= 1")
        if not 0 <= worker_index < total_workers:
            raise ValueError(
                f"worker_index must be in [0, {total_workers - 1}], got {worker_index}",
            )
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.repository = repository
        self.worker_index = worker_index
        self.total_workers = total_workers
        self.page_size = page_size
        self.crawl_status = crawl_status
        self._buffer: deque[PlaceView] = deque()
        self._after_id: int | None = None
        self._has_next = True
        self._pages_read = 0

    def fetch_page(self, after_id: int | None) -> ShardPage:
        """Fetch the page of this shard that starts strictly after ``after_id``."""

        ids = self.repository.fetch_id_page(
            worker_index=self.worker_index,
            total_workers=self.total_workers,
            after_id=after_id,
            limit=self.page_size + 1,
            crawl_status=self.crawl_status,
        )
        has_next = len(ids) > self.page_size
        page_ids = ids[: self.page_size]
        places = self.repository.load_places(page_ids)
        return ShardPage(
            places=places,
            last_id=page_ids[-1] if page_ids else after_id,
            has_next=has_next,
        )

    def pages(self) -> Iterator[ShardPage]:
        """Yield pages from the beginning of the shard until it is exhausted."""

        after_id: int | None = None
        while True:
            page = self.fetch_page(after_id)
            if page.places or page.has_next:
                yield page
            if not page.has_next:
                return
            after_id = page.last_id

    def read(self) -> PlaceView | None:
        """Return the next place, or ``None`` once the shard is exhausted."""

        while not self._buffer:
            if not self._has_next:
                return None
            page = self.fetch_page(self._after_id)
            self._pages_read += 1
            self._after_id = page.last_id
            self._has_next = page.has_next
            self._buffer.extend(page.places)
            logger.debug(
                "Shard %s/%s page %s: %s places, has_next=%s",
                self.worker_index,
                self.total_workers,
                self._pages_read,
                len(page.places),
                page.has_next,
            )
        return self._buffer.popleft()

    def __iter__(self) -> Iterator[PlaceView]:
        while True:
            place = self.read()
            if place is None:
                return
            yield place
