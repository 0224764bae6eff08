"""CLI entrypoint for place-ingest."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import redis
import rich_click as click

from place_ingest import __version__
from place_ingest.checkpoint.controllers import (
    CheckpointBatchCommand,
    CheckpointCliController,
    CheckpointRegionsCommand,
)
from place_ingest.places.controllers import PlacesCliController, PlacesShardCommand
from place_ingest.places.models import CrawlStatus
from place_ingest.queue.controllers import (
    QueueCliController,
    QueuePushAllCommand,
    QueuePushCommand,
    QueueStatsCommand,
    WorkerRunCommand,
)
from place_ingest.queue.models import TaskFlags

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
CHECKPOINT_CONTROLLER = CheckpointCliController()
PLACES_CONTROLLER = PlacesCliController()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _flag_options(func: Callable) -> Callable:
    func = click.option(
        "--reviews/--no-reviews",
        default=True,
        show_default=True,
        help="Refresh reviews.",
    )(func)
    func = click.option(
        "--images/--no-images",
        default=True,
        show_default=True,
        help="Refresh images.",
    )(func)
    return click.option(
        "--menus/--no-menus",
        default=True,
        show_default=True,
        help="Refresh menus.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="place-ingest")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Root log level (default: PLACE_INGEST_LOG_LEVEL or INFO).",
)
def place_ingest(log_level: str | None) -> None:
    """Place ingestion coordination CLI."""

    level = (log_level or os.getenv("PLACE_INGEST_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@place_ingest.group()
def queue() -> None:
    """Update queue commands."""


@queue.command("push")
@click.argument("place_id", type=click.IntRange(min=1))
@_flag_options
@click.option("--priority", is_flag=True, default=False, help="Push to the priority queue.")
def queue_push(place_id: int, menus: bool, images: bool, reviews: bool, priority: bool) -> None:
    """Enqueue one place update task."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.push(
                QueuePushCommand(
                    place_ids=(place_id,),
                    flags=_flags(menus, images, reviews),
                    priority=priority,
                ),
            ),
        ),
    )


@queue.command("push-batch")
@click.argument("place_ids", nargs=-1, required=True, type=click.IntRange(min=1))
@_flag_options
def queue_push_batch(place_ids: tuple[int, ...], menus: bool, images: bool, reviews: bool) -> None:
    """Enqueue one normal-priority task per place id."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.push(
                QueuePushCommand(
                    place_ids=place_ids,
                    flags=_flags(menus, images, reviews),
                ),
            ),
        ),
    )


@queue.command("push-all")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_flag_options
def queue_push_all(db_path: Path | None, menus: bool, images: bool, reviews: bool) -> None:
    """Enqueue every place whose crawl status is PENDING."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.push_all(
                QueuePushAllCommand(
                    db_path=db_path,
                    flags=_flags(menus, images, reviews),
                ),
            ),
        ),
    )


@queue.command("stats")
@click.option("--local-only", is_flag=True, default=False, help="Only workers on this host.")
def queue_stats(local_only: bool) -> None:
    """Show queue depths, worker fleet and counters."""

    _emit_lines(_run(lambda: QUEUE_CONTROLLER.stats(QueueStatsCommand(local_only=local_only))))


@queue.command("task")
@click.argument("task_id")
def queue_task(task_id: str) -> None:
    """Show progress of one task."""

    _emit_lines(_run(lambda: QUEUE_CONTROLLER.task(task_id)))


@queue.command("workers")
@click.option("--local-only", is_flag=True, default=False, help="Only workers on this host.")
def queue_workers(local_only: bool) -> None:
    """List registered workers."""

    _emit_lines(_run(lambda: QUEUE_CONTROLLER.workers(QueueStatsCommand(local_only=local_only))))


@queue.command("failed")
def queue_failed() -> None:
    """List place ids that exhausted their retries."""

    _emit_lines(_run(QUEUE_CONTROLLER.failed))


@queue.command("retry-failed")
@_flag_options
def queue_retry_failed(menus: bool, images: bool, reviews: bool) -> None:
    """Re-enqueue every failed place as a fresh task."""

    flags = _flags(menus, images, reviews)
    _emit_lines(_run(lambda: QUEUE_CONTROLLER.retry_failed(flags)))


@queue.command("clear")
def queue_clear() -> None:
    """Drop everything waiting in the pending and priority queues."""

    _emit_lines(_run(QUEUE_CONTROLLER.clear))


@queue.command("clear-completed")
def queue_clear_completed() -> None:
    """Drop the completed set."""

    _emit_lines(_run(QUEUE_CONTROLLER.clear_completed))


@queue.command("clear-failed")
def queue_clear_failed() -> None:
    """Drop the failed set."""

    _emit_lines(_run(QUEUE_CONTROLLER.clear_failed))


@queue.command("cleanup-workers")
def queue_cleanup_workers() -> None:
    """Evict workers whose heartbeat is stale."""

    _emit_lines(_run(QUEUE_CONTROLLER.cleanup_workers))


@place_ingest.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--threads", type=click.IntRange(min=1, max=64), default=None, help="Loop threads.")
@click.option("--worker-id", default=None, help="Registry id (default: PLACE_INGEST_WORKER_ID).")
@click.option("--handler", default=None, help="Task handler as 'module:attribute'.")
@click.option(
    "--with-maintenance",
    is_flag=True,
    default=False,
    help="Also run the stale-worker sweep in this process.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    threads: int | None,
    worker_id: str | None,
    handler: str | None,
    with_maintenance: bool,
) -> None:
    """Run the worker pool until SIGINT/SIGTERM."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    threads=threads,
                    worker_id=worker_id,
                    handler=handler,
                    with_maintenance=with_maintenance,
                ),
            ),
        ),
    )


@place_ingest.group()
def monitor() -> None:
    """Queue maintenance commands."""


@monitor.command("run")
def monitor_run() -> None:
    """Run the stale-worker sweep on its schedule until SIGINT/SIGTERM."""

    _emit_lines(_run(QUEUE_CONTROLLER.run_monitor))


@place_ingest.group()
def checkpoint() -> None:
    """Batch checkpoint inspection commands."""


@checkpoint.command("progress")
@click.argument("batch_name", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoint_progress(batch_name: str | None, db_path: Path | None) -> None:
    """Show region progress of a batch."""

    _emit_lines(
        _run(
            lambda: CHECKPOINT_CONTROLLER.progress(
                CheckpointBatchCommand(db_path=db_path, batch_name=batch_name),
            ),
        ),
    )


@checkpoint.command("status")
@click.argument("batch_name", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoint_status(batch_name: str | None, db_path: Path | None) -> None:
    """Show the latest execution of a batch and whether a run was interrupted."""

    _emit_lines(
        _run(
            lambda: CHECKPOINT_CONTROLLER.status(
                CheckpointBatchCommand(db_path=db_path, batch_name=batch_name),
            ),
        ),
    )


@checkpoint.command("regions")
@click.argument("batch_name", required=False)
@click.argument("region_type", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoint_regions(
    batch_name: str | None,
    region_type: str | None,
    db_path: Path | None,
) -> None:
    """List region checkpoints of a batch."""

    _emit_lines(
        _run(
            lambda: CHECKPOINT_CONTROLLER.regions(
                CheckpointRegionsCommand(
                    db_path=db_path,
                    batch_name=batch_name,
                    region_type=region_type,
                ),
            ),
        ),
    )


@place_ingest.group()
def places() -> None:
    """Place table commands."""


@places.command("shard")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--worker-index", type=click.IntRange(min=0), default=None, help="Shard index.")
@click.option("--total-workers", type=click.IntRange(min=1), default=None, help="Shard count.")
@click.option("--page-size", type=click.IntRange(min=1), default=None, help="Ids per page.")
@click.option(
    "--status",
    "crawl_status",
    type=click.Choice([status.value for status in CrawlStatus], case_sensitive=False),
    default=CrawlStatus.PENDING.value,
    show_default=True,
    help="Crawl status to select.",
)
@click.option("--all", "all_places", is_flag=True, default=False, help="Ignore crawl status.")
def places_shard(  # noqa: PLR0913
    db_path: Path | None,
    worker_index: int | None,
    total_workers: int | None,
    page_size: int | None,
    crawl_status: str,
    all_places: bool,
) -> None:
    """List the places that belong to one modulo shard."""

    _emit_lines(
        _run(
            lambda: PLACES_CONTROLLER.shard(
                PlacesShardCommand(
                    db_path=db_path,
                    worker_index=worker_index,
                    total_workers=total_workers,
                    page_size=page_size,
                    crawl_status=None if all_places else crawl_status.upper(),
                ),
            ),
        ),
    )


def _flags(menus: bool, images: bool, reviews: bool) -> TaskFlags:
    return TaskFlags(update_menus=menus, update_images=images, update_reviews=reviews)


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, redis.RedisError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    place_ingest()
