"""Controllers for place CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from place_ingest.config import Settings
from place_ingest.places.repository import PlaceRepository
from place_ingest.places.sharded_reader import ShardedPlaceReader


@dataclass(slots=True)
class PlacesShardCommand:
    """CLI input for listing one shard of the places table."""

    db_path: Path | None
    worker_index: int | None
    total_workers: int | None
    page_size: int | None
    crawl_status: str | None


class PlacesCliController:
    """Place table inspection."""

    def shard(self, command: PlacesShardCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.worker_index is not None:
            settings.sharding.worker_index = command.worker_index
        if command.total_workers is not None:
            settings.sharding.total_workers = command.total_workers
        if command.page_size is not None:
            settings.sharding.page_size = command.page_size
        settings.validate_sharding()

        repository = PlaceRepository(settings.db_path)
        repository.init_schema()
        try:
            reader = ShardedPlaceReader(
                repository,
                worker_index=settings.sharding.worker_index,
                total_workers=settings.sharding.total_workers,
                page_size=settings.sharding.page_size,
                crawl_status=command.crawl_status,
            )
            places = list(reader)
        finally:
            repository.close()

        return [
            f"Shard {settings.sharding.worker_index}/{settings.sharding.total_workers}: "
            f"{len(places)} places",
            *(f"{place.place_id}\t{place.name}\t{place.crawl_status}" for place in places),
        ]
