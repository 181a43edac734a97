"""Entry point for feedwatch: python -m feedwatch"""

import asyncio
import logging
import os

from feedwatch.database import Database
from feedwatch.poller import start_polling
from feedwatch.scheduler import DEFAULT_HTTP_TIMEOUT
from feedwatch.watcher import SECONDS_PER_MINUTE

DEFAULT_DB_PATH = "feedwatch.db"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("feedwatch")


def _feed_urls_from_env() -> list[str]:
    raw = os.environ.get("FEEDWATCH_FEEDS", "")
    return [url.strip() for url in raw.split(",") if url.strip()]


async def main() -> None:
    """Initialize storage and poll feeds until interrupted."""
    db_path = os.environ.get("FEEDWATCH_DB_PATH", DEFAULT_DB_PATH)
    cadence_minutes = os.environ.get("FEEDWATCH_CADENCE")
    timeout = float(os.environ.get("FEEDWATCH_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT))

    db = Database(db_path)
    db.connect()

    try:
        urls = _feed_urls_from_env() or [s.fetch_url for s in db.get_all_sources()]
        if not urls:
            logger.error("No feeds to poll. Set FEEDWATCH_FEEDS to a comma-separated list of URLs.")
            return

        cadence = float(cadence_minutes) * SECONDS_PER_MINUTE if cadence_minutes else None
        await start_polling(db, urls, cadence, timeout=timeout)
    finally:
        db.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    run()
