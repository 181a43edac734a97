"""Scheduler owning one SourceWatcher per registered source."""

import asyncio
import logging
import math
from datetime import datetime
from typing import Callable

import httpx

from feedwatch.feed_parser import parse_feed
from feedwatch.models import Source
from feedwatch.watcher import (
    DEFAULT_TTL_MINUTES,
    SECONDS_PER_MINUTE,
    USER_AGENT,
    RegistrationError,
    SourceWatcher,
    validate_url,
)

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 15.0  # seconds
DEFAULT_DOCUMENT_BUFFER = 6
DEFAULT_ERROR_BUFFER = 2


class Scheduler:
    """Starts, stops and fans in the output of a set of SourceWatchers.

    Every watcher pushes parsed documents onto ``documents`` and errors onto
    ``errors``. Both queues are bounded; see SourceWatcher for how each one
    behaves when full.

    Usage::

        async with Scheduler() as scheduler:
            await scheduler.register("https://example.com/feed")
            await scheduler.start()
            document = await scheduler.documents.get()
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        document_buffer: int = DEFAULT_DOCUMENT_BUFFER,
        error_buffer: int = DEFAULT_ERROR_BUFFER,
        parser: Callable[[bytes], Source] = parse_feed,
    ):
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        self._client = client
        self._parser = parser
        self.documents: asyncio.Queue[Source] = asyncio.Queue(maxsize=document_buffer)
        self.errors: asyncio.Queue[Exception] = asyncio.Queue(maxsize=error_buffer)
        self._watchers: list[SourceWatcher] = []
        self._lock = asyncio.Lock()
        self.started = False

    async def __aenter__(self) -> "Scheduler":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def watchers(self) -> tuple[SourceWatcher, ...]:
        return tuple(self._watchers)

    async def register(
        self,
        url: str,
        cadence: float | None = None,
        *,
        etag: str | None = None,
        last_modified: datetime | None = None,
    ) -> SourceWatcher:
        """Add a source to poll every ``cadence`` seconds (default 60 minutes).

        ``etag`` and ``last_modified`` seed the cache validators, e.g. from a
        previously stored Source. If the scheduler is running, the new watcher
        starts right away.

        Raises:
            RegistrationError: If the URL is invalid or already registered, or the
                cadence is not positive.
        """
        validate_url(url)
        if cadence is None:
            cadence = DEFAULT_TTL_MINUTES * SECONDS_PER_MINUTE
        elif not math.isfinite(cadence) or cadence <= 0:
            raise RegistrationError(
                f"cadence must be a positive, finite number of seconds (got {cadence})"
            )

        async with self._lock:
            if any(w.url == url for w in self._watchers):
                raise RegistrationError(f"Already watching {url!r}")

            watcher = SourceWatcher(
                url,
                cadence,
                self._client,
                self.documents,
                self.errors,
                parser=self._parser,
                etag=etag,
                last_modified=last_modified,
            )
            self._watchers.append(watcher)
            if self.started:
                watcher.start()

        logger.info("Registered %s (cadence %ss)", url, cadence)
        return watcher

    async def start(self) -> None:
        """Start every registered watcher. Does nothing if already started."""
        async with self._lock:
            if self.started:
                return
            for watcher in self._watchers:
                watcher.start()
            self.started = True
        logger.info("Scheduler started (%d sources)", len(self._watchers))

    async def stop(self) -> None:
        """Stop every watcher and wait for their loops to exit.

        Once this returns no further fetches are made. Does nothing if not started.
        """
        async with self._lock:
            if not self.started:
                return
            await asyncio.gather(*(w.stop() for w in self._watchers))
            self.started = False
        logger.info("Scheduler stopped")

    async def aclose(self) -> None:
        """Stop polling and close the HTTP client if the scheduler created it."""
        await self.stop()
        if self._owns_client:
            await self._client.aclose()
