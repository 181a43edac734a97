"""Background ingest loop: runs the scheduler and stores what it fetches."""

import asyncio
import logging

import httpx

from feedwatch.database import Database, ReconciliationError
from feedwatch.scheduler import DEFAULT_HTTP_TIMEOUT, Scheduler
from feedwatch.watcher import SECONDS_PER_MINUTE, RegistrationError

logger = logging.getLogger(__name__)


async def store_documents(scheduler: Scheduler, db: Database) -> None:
    """Persist every fetched document, each in its own transaction."""
    while True:
        document = await scheduler.documents.get()
        try:
            await asyncio.to_thread(db.upsert_source, document, True)
            logger.info(
                "Feed '%s': stored %d entries", document.title, len(document.entries)
            )
        except ReconciliationError as e:
            # Nothing was kept; the next successful poll retries the whole document.
            logger.error("Feed '%s' could not be stored: %s", document.fetch_url, e)
        finally:
            scheduler.documents.task_done()


async def report_errors(scheduler: Scheduler) -> None:
    """Log fetch and parse errors reported by the watchers."""
    while True:
        error = await scheduler.errors.get()
        logger.warning("%s", error)
        scheduler.errors.task_done()


async def start_polling(
    db: Database,
    urls: list[str],
    cadence: float | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> None:
    """Poll ``urls`` and store the results until cancelled.

    Sources already in the database resume with their stored cache validators
    and ttl, so a restart does not refetch unchanged feeds.
    """
    async with Scheduler(client, timeout=timeout) as scheduler:
        for url in urls:
            stored = db.get_source_by_fetch_url(url)
            source_cadence = cadence
            if source_cadence is None and stored and stored.ttl:
                source_cadence = stored.ttl * SECONDS_PER_MINUTE
            try:
                await scheduler.register(
                    url,
                    source_cadence,
                    etag=stored.etag if stored else None,
                    last_modified=stored.last_modified if stored else None,
                )
            except RegistrationError as e:
                logger.error("Skipping feed %r: %s", url, e)

        await scheduler.start()
        logger.info("Poller started (%d sources)", len(scheduler.watchers))
        await asyncio.gather(store_documents(scheduler, db), report_errors(scheduler))
