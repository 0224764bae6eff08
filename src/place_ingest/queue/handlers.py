"""Task handler contracts and the built-in place handler."""

from __future__ import annotations

import importlib
import logging
from typing import Protocol

from place_ingest.places.models import CrawlStatus
from place_ingest.places.repository import PlaceRepository
from place_ingest.queue.failures import PlaceNotFoundError
from place_ingest.queue.models import UpdateTask

logger = logging.getLogger(__name__)


class TaskHandler(Protocol):
    """Interface for the code that performs one place update."""

    def handle(self, task: UpdateTask) -> None:
        """Run the update; raise ``PlaceNotFoundError`` when the place is gone."""
        raise NotImplementedError


class NotFoundSink(Protocol):
    """Terminal side effect applied when a task's place no longer exists."""

    def mark_not_found(self, place_id: int) -> bool:
        """Persist the not-found state; return ``False`` if nothing was updated."""
        raise NotImplementedError


class MarkCrawledHandler:
    """Minimal handler that flips a place's crawl status to ``COMPLETED``."""

    def __init__(self, places: PlaceRepository) -> None:
        self.places = places

    def handle(self, task: UpdateTask) -> None:
        place = self.places.get_place(task.place_id)
        if place is None:
            raise PlaceNotFoundError(task.place_id, message="no such place row")
        self.places.mark_crawl_status(task.place_id, CrawlStatus.COMPLETED)
        logger.debug(
            "Place %s (%s) updated: menus=%s images=%s reviews=%s",
            place.place_id,
            place.name,
            task.update_menus,
            task.update_images,
            task.update_reviews,
        )


def load_task_handler(path: str, places: PlaceRepository) -> TaskHandler:
    """Resolve ``module:attribute`` and build a handler from it.

    The attribute is called with the place repository and must return an object
    with a ``handle(task)`` method.
    """

    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"Invalid task handler path {path!r}. Expected 'module:attribute'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ValueError(f"Cannot import task handler module {module_name!r}: {error}") from error
    factory = getattr(module, attribute, None)
    if factory is None or not callable(factory):
        raise ValueError(f"Task handler {path!r} is not a callable attribute.")
    handler = factory(places)
    if not callable(getattr(handler, "handle", None)):
        raise ValueError(f"Task handler {path!r} did not produce an object with handle().")
    return handler
