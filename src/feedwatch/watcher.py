"""Per-source polling loop with conditional fetches and adaptive cadence."""

import asyncio
import enum
import logging
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Callable
from urllib.parse import urlparse

import httpx

from feedwatch.feed_parser import FeedParseError, parse_feed
from feedwatch.models import Source

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60
DEFAULT_TTL_MINUTES = 60
USER_AGENT = "feedwatch/0.1.0"


class RegistrationError(Exception):
    """Raised when a source cannot be registered for polling."""


class FetchError(Exception):
    """Raised when a source could not be fetched (network, timeout or bad status)."""

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class WatcherState(enum.Enum):
    REGISTERED = "registered"
    RUNNING = "running"
    STOPPED = "stopped"


def validate_url(url: str) -> None:
    """Validate that the URL is an absolute http(s) URL."""
    try:
        result = urlparse(url)
    except ValueError:
        raise RegistrationError(f"Invalid URL format: {url!r}")
    if not result.scheme or not result.netloc:
        raise RegistrationError(f"Invalid URL format: {url!r}")
    if result.scheme not in ("http", "https"):
        raise RegistrationError(
            f"Invalid URL format: only http and https are supported (got {url!r})"
        )


class SourceWatcher:
    """Polls one source on its own cadence.

    The watcher's task is the only thing that changes its cache validators and
    cadence. Parsed documents go onto ``documents``, which applies backpressure.
    Errors go onto ``errors`` on a best-effort basis: when that queue is full
    the error is dropped so a slow error consumer never stalls polling.
    """

    def __init__(
        self,
        url: str,
        cadence: float,
        client: httpx.AsyncClient,
        documents: asyncio.Queue,
        errors: asyncio.Queue,
        parser: Callable[[bytes], Source] = parse_feed,
        etag: str | None = None,
        last_modified: datetime | None = None,
    ):
        self.url = url
        self.cadence = cadence
        self.etag = etag or ""
        self.last_modified = last_modified
        self.state = WatcherState.REGISTERED
        self._client = client
        self._documents = documents
        self._errors = errors
        self._parser = parser
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<SourceWatcher {self.url} every {self.cadence}s {self.state.value}>"

    # --- Lifecycle ---

    def start(self) -> None:
        """Start polling. The first tick fires immediately."""
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self.state = WatcherState.RUNNING
        self._task = asyncio.create_task(self._run(), name=f"watch {self.url}")

    async def stop(self) -> None:
        """Stop polling and wait until the loop has exited.

        A tick already in flight is allowed to finish; no tick starts afterwards.
        """
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.state = WatcherState.STOPPED

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        try:
            while not self._stopping.is_set():
                delay = next_tick - loop.time()
                if delay > 0 and await self._sleep_or_stop(delay):
                    break

                started = loop.time()
                try:
                    changed = await self.tick()
                except Exception as e:
                    logger.error("Watcher %s: tick failed: %s", self.url, e)
                    changed = False

                # A new cadence re-arms the timer from now. Rediscovery never
                # fires an extra immediate tick.
                if changed:
                    logger.info(
                        "Watcher %s: discovered new cadence %ss, restarting timer",
                        self.url, self.cadence,
                    )
                    next_tick = loop.time() + self.cadence
                else:
                    next_tick = started + self.cadence
        finally:
            self.state = WatcherState.STOPPED

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Wait out ``delay``. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # --- One polling step ---

    async def tick(self) -> bool:
        """Fetch, parse and emit once. Returns True if the cadence changed."""
        try:
            body = await self._fetch()
        except FetchError as e:
            self._emit_error(e)
            return False

        if body is None:
            logger.debug("Watcher %s: not modified", self.url)
            return False

        try:
            document = await self._parse(body)
        except FeedParseError as e:
            self._emit_error(e)
            return False

        document.fetch_url = self.url
        document.etag = self.etag or None
        document.last_modified = self.last_modified
        await self._emit_document(document)

        return self._adopt_cadence(document.ttl)

    async def _fetch(self) -> bytes | None:
        """Conditionally GET the source. Returns None when it was not modified."""
        headers = {"User-Agent": USER_AGENT}
        if self.etag:
            headers["If-None-Match"] = self.etag
        if self.last_modified is not None:
            headers["If-Modified-Since"] = format_datetime(
                self.last_modified.astimezone(timezone.utc), usegmt=True
            )

        try:
            response = await self._client.get(self.url, headers=headers)
        except httpx.TimeoutException as e:
            raise FetchError(f"timed out fetching feed {self.url!r}: {e!r}", self.url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"failed to fetch feed {self.url!r}: {e!r}", self.url) from e

        if response.status_code == httpx.codes.NOT_MODIFIED:
            return None
        if not response.is_success:
            raise FetchError(
                f"got unexpected status on feed {self.url!r}: "
                f"{response.status_code} {response.reason_phrase}",
                self.url,
            )

        self._capture_validators(response.headers)
        return response.content

    async def _parse(self, body: bytes) -> Source:
        try:
            return await asyncio.to_thread(self._parser, body)
        except Exception as e:
            raise FeedParseError(f"failed to parse feed {self.url!r}: {e}") from e

    def _capture_validators(self, headers: httpx.Headers) -> None:
        """Remember new cache validators. Missing headers keep the old values."""
        etag = headers.get("ETag")
        if etag:
            self.etag = etag

        last_modified = headers.get("Last-Modified")
        if last_modified:
            try:
                parsed = parsedate_to_datetime(last_modified)
            except (TypeError, ValueError):
                logger.warning(
                    "Failed to parse Last-Modified value %r on feed %s (non-fatal)",
                    last_modified, self.url,
                )
                return
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            self.last_modified = parsed.astimezone(timezone.utc)

    def _adopt_cadence(self, ttl: int | None) -> bool:
        if not ttl or ttl <= 0:
            return False
        cadence = ttl * SECONDS_PER_MINUTE
        if cadence == self.cadence:
            return False
        self.cadence = cadence
        return True

    # --- Emission ---

    async def _emit_document(self, document: Source) -> None:
        """Enqueue a document, waiting for room unless the watcher is stopping."""
        try:
            self._documents.put_nowait(document)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._documents.put(document))
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({put, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not put.done():
                put.cancel()
                logger.warning(
                    "Watcher %s stopped while the document queue was full; "
                    "dropping document %r",
                    self.url, document.title,
                )

    def _emit_error(self, error: Exception) -> None:
        """Report an error without blocking. Dropped if the error queue is full."""
        logger.debug("Watcher %s: %s", self.url, error)
        try:
            self._errors.put_nowait(error)
        except asyncio.QueueFull:
            logger.debug("Error queue full, dropping error for %s: %s", self.url, error)
