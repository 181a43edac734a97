"""Data models for feedwatch."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Enclosure:
    """A media resource attached to an entry."""

    url: str
    mime_type: str = ""
    length: int = 0
    file_path: str | None = None
    entry_id: int | None = None
    id: int | None = None


@dataclass
class Entry:
    """A single post within a source, identified across polls by its GUID."""

    guid: str
    title: str = ""
    description: str = ""
    link: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    enclosure: Enclosure | None = None
    source_id: int | None = None
    id: int | None = None


@dataclass
class Source:
    """A pollable feed, identified by the URL it is fetched from.

    A parsed Source together with its entries is the document emitted by the
    scheduler and consumed by ``Database.upsert_source``.
    """

    fetch_url: str
    title: str
    description: str = ""
    link: str | None = None
    language: str | None = None
    ttl: int | None = None
    etag: str | None = None
    last_modified: datetime | None = None
    entries: list[Entry] = field(default_factory=list)
    id: int | None = None
