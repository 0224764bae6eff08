"""SQLModel-backed access to the ``places`` table."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from place_ingest.places.models import CrawlStatus, PlaceView
from place_ingest.storage.alembic_runner import upgrade_head
from place_ingest.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from place_ingest.storage.sqlmodel_models import Place

logger = logging.getLogger(__name__)


class PlaceRepository:
    """Place persistence facade used by task handlers and sharded readers."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def add_places(
        self,
        names: Iterable[str],
        *,
        crawl_status: CrawlStatus = CrawlStatus.PENDING,
    ) -> list[int]:
        """Insert places and return their generated ids in insertion order."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            rows = [
                Place(name=name, crawl_status=crawl_status.value, created_at=now, updated_at=now)
                for name in names
            ]
            session.add_all(rows)
            session.commit()
            return [row.id for row in rows if row.id is not None]

    def add_place(
        self,
        name: str,
        *,
        place_id: int | None = None,
        crawl_status: CrawlStatus = CrawlStatus.PENDING,
    ) -> int:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Place(
                id=place_id,
                name=name,
                crawl_status=crawl_status.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Place insert did not return an id.")
            return row.id

    def get_place(self, place_id: int) -> PlaceView | None:
        with Session(self.engine) as session:
            row = session.get(Place, place_id)
            return _to_place_view(row) if row is not None else None

    def mark_crawl_status(self, place_id: int, status: CrawlStatus) -> bool:
        """Set a place's crawl status; return ``False`` if the place does not exist."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Place)
                .where(col(Place.id) == place_id)
                .values(crawl_status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def mark_not_found(self, place_id: int) -> bool:
        updated = self.mark_crawl_status(place_id, CrawlStatus.NOT_FOUND)
        if updated:
            logger.info("Place %s marked as %s", place_id, CrawlStatus.NOT_FOUND.value)
        return updated

    def list_pending_place_ids(self, *, limit: int | None = None) -> list[int]:
        with Session(self.engine) as session:
            statement = (
                select(Place.id)
                .where(Place.crawl_status == CrawlStatus.PENDING.value)
                .order_by(col(Place.id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            return [place_id for place_id in session.exec(statement).all() if place_id is not None]

    def count_pending(self, *, worker_index: int = 0, total_workers: int = 1) -> int:
        """Count pending places that fall into the given modulo shard."""

        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(Place)
                .where(
                    Place.crawl_status == CrawlStatus.PENDING.value,
                    col(Place.id) % total_workers == worker_index,
                ),
            ).one()
            return int(count)

    def fetch_id_page(
        self,
        *,
        worker_index: int,
        total_workers: int,
        after_id: int | None,
        limit: int,
        crawl_status: str | None = CrawlStatus.PENDING.value,
    ) -> list[int]:
        """Return up to ``limit`` ordered ids of one shard strictly after ``after_id``."""

        with Session(self.engine) as session:
            statement = select(Place.id).where(col(Place.id) % total_workers == worker_index)
            if after_id is not None:
                statement = statement.where(col(Place.id) > after_id)
            if crawl_status is not None:
                statement = statement.where(Place.crawl_status == crawl_status)
            statement = statement.order_by(col(Place.id).asc()).limit(limit)
            return [place_id for place_id in session.exec(statement).all() if place_id is not None]

    def load_places(self, place_ids: Iterable[int]) -> list[PlaceView]:
        """Materialize places by id, ordered by id; ids missing from the table are skipped."""

        ids = list(place_ids)
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Place).where(col(Place.id).in_(ids)).order_by(col(Place.id).asc()),
            ).all()
            return [_to_place_view(row) for row in rows]


def _to_place_view(row: Place) -> PlaceView:
    if row.id is None:
        raise RuntimeError("Place row has no id.")
    return PlaceView(
        place_id=row.id,
        name=row.name,
        crawl_status=row.crawl_status,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
