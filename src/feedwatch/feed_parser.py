"""RSS/Atom document parsing using feedparser."""

import logging
from datetime import datetime, timezone
from time import struct_time

import feedparser

from feedwatch.models import Enclosure, Entry, Source

logger = logging.getLogger(__name__)


class FeedParseError(Exception):
    """Raised when a fetched body cannot be parsed into a feed."""


def parse_feed(body: bytes) -> Source:
    """Parse a raw RSS or Atom body into a Source with its entries.

    The returned Source has an empty ``fetch_url``; the caller knows where the
    body came from and fills it in.

    Args:
        body: The raw response body.

    Returns:
        Source with feed metadata and entries in document order.

    Raises:
        FeedParseError: If the body is not a valid feed or declares a bad ttl.
    """
    parsed = feedparser.parse(body)

    if not parsed.feed.get("title"):
        if parsed.bozo and parsed.bozo_exception:
            raise FeedParseError(
                f"Body is not a valid RSS or Atom feed: {parsed.bozo_exception}"
            )
        raise FeedParseError("Body is not a valid RSS or Atom feed")

    if parsed.bozo:
        logger.debug("Feed has formatting issues: %s", parsed.bozo_exception)

    return Source(
        fetch_url="",
        title=parsed.feed.get("title", ""),
        description=parsed.feed.get("description") or parsed.feed.get("subtitle") or "",
        link=parsed.feed.get("link"),
        language=parsed.feed.get("language"),
        ttl=_parse_ttl(parsed.feed.get("ttl")),
        entries=_extract_entries(parsed.entries),
    )


def _parse_ttl(value: str | None) -> int | None:
    """Parse the channel's <ttl> (minutes)."""
    if value is None or not str(value).strip():
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise FeedParseError(f"Malformed feed: ttl is not a number (got {value!r})")


def _extract_entries(raw_entries: list) -> list[Entry]:
    """Build Entry objects from feedparser entries, skipping those without a GUID."""
    entries = []
    for raw in raw_entries:
        guid = raw.get("id") or raw.get("guid") or raw.get("link")
        if not guid:
            logger.warning(
                "Skipping entry with no identifier: %s", raw.get("title", "unknown")
            )
            continue

        entries.append(
            Entry(
                guid=guid,
                title=raw.get("title", ""),
                description=raw.get("summary") or raw.get("description") or "",
                link=raw.get("link"),
                author=raw.get("author"),
                published_at=_parse_date(raw),
                enclosure=_extract_enclosure(raw),
            )
        )
    return entries


def _extract_enclosure(raw: dict) -> Enclosure | None:
    """Return the entry's first enclosure that carries a URL, if any."""
    for enc in raw.get("enclosures") or []:
        url = enc.get("href") or enc.get("url")
        if not url:
            continue
        try:
            length = int(enc.get("length") or 0)
        except (TypeError, ValueError):
            length = 0
        return Enclosure(url=url, mime_type=enc.get("type") or "", length=length)
    return None


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry as an aware UTC datetime."""
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if isinstance(time_struct, struct_time):
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc)
            except (ValueError, OverflowError):
                continue
    return None
