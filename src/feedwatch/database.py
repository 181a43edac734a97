"""SQLite storage and natural-key reconciliation for feedwatch."""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator

from feedwatch.models import Enclosure, Entry, Source

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT = 30.0  # seconds

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    link TEXT,
    fetch_url TEXT UNIQUE NOT NULL,
    language TEXT,
    ttl INTEGER,
    etag TEXT,
    last_modified TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    guid TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    link TEXT,
    author TEXT,
    published_at TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS enclosures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id INTEGER NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    url TEXT UNIQUE NOT NULL,
    mime_type TEXT NOT NULL DEFAULT '',
    length INTEGER NOT NULL DEFAULT 0,
    file_path TEXT
);

CREATE INDEX IF NOT EXISTS idx_entries_source_id ON entries(source_id);
CREATE INDEX IF NOT EXISTS idx_entries_published_at ON entries(published_at);
CREATE INDEX IF NOT EXISTS idx_enclosures_entry_id ON enclosures(entry_id);
"""


class ReconciliationError(Exception):
    """Raised when a document cannot be persisted. Nothing from the call is kept."""


@dataclass
class Transaction:
    """A write transaction threaded through nested upserts.

    Only the context that opened the transaction has ``owner`` set; it alone
    commits or rolls back. Upserts handed an existing transaction work on a
    joined (non-owning) view of it.
    """

    conn: sqlite3.Connection
    owner: bool = True

    def joined(self) -> "Transaction":
        return Transaction(conn=self.conn, owner=False)


class Database:
    """SQLite database manager for sources, entries and enclosures.

    Reads go through one shared connection. Each write transaction gets its own
    connection so concurrent upserts for different documents are isolated by
    SQLite's locking rather than by Python code.
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = self._open()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _open(self, isolation_level: str | None = "") -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=isolation_level,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Open a write transaction that commits on success and rolls back on error.

        The yielded Transaction can be passed to any upsert to make it part of
        this unit of work.
        """
        conn = self._open(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            conn.close()
            raise ReconciliationError(f"failed to start transaction: {e}") from e

        try:
            yield Transaction(conn=conn, owner=True)
        except BaseException:
            conn.rollback()
            raise
        else:
            try:
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise ReconciliationError(f"failed to commit transaction: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _scope(self, tx: Transaction | None) -> Iterator[Transaction]:
        """Join ``tx`` if given, otherwise own a fresh transaction."""
        if tx is None:
            with self.transaction() as owned:
                yield owned
        else:
            yield tx.joined()

    # --- Upserts ---

    def upsert_source(
        self, source: Source, cascade: bool = False, tx: Transaction | None = None
    ) -> Source:
        """Insert or update a source, found by its id or fetch URL.

        Every mutable column is overwritten with the incoming value. The source's
        id is refreshed from the database afterwards. With ``cascade``, its
        entries (and their enclosures) are written in the same transaction, so
        either the whole document is stored or none of it is.

        Raises:
            ReconciliationError: If any row in the document fails to persist.
        """
        if not source.fetch_url:
            raise ReconciliationError("source has no fetch URL")

        with _restore_ids_on_error(source, owner=tx is None), self._scope(tx) as tx:
            values = {
                "title": source.title,
                "description": source.description,
                "link": source.link,
                "fetch_url": source.fetch_url,
                "language": source.language,
                "ttl": source.ttl,
                "etag": source.etag,
                "last_modified": _dt_to_str(source.last_modified),
                "updated_at": _dt_to_str(_now()),
            }
            try:
                source.id = _upsert_row(tx.conn, "sources", "fetch_url", values, source.id)
            except sqlite3.Error as e:
                raise ReconciliationError(
                    f"failed to upsert source {source.fetch_url!r}: {e}"
                ) from e

            if cascade and source.entries:
                for entry in source.entries:
                    entry.source_id = source.id
                    self.upsert_entry(entry, cascade=True, tx=tx)

            logger.debug(
                "Upserted source %r as id %s (%d entries)",
                source.fetch_url, source.id, len(source.entries) if cascade else 0,
            )
        return source

    def upsert_entry(
        self, entry: Entry, cascade: bool = False, tx: Transaction | None = None
    ) -> Entry:
        """Insert or update an entry, found by its id or GUID.

        With ``cascade``, the entry's enclosure is written in the same transaction.
        """
        if not entry.guid:
            raise ReconciliationError("entry has no guid")
        if entry.source_id is None:
            raise ReconciliationError(f"entry {entry.guid!r} has no source id")

        with _restore_ids_on_error(entry, owner=tx is None), self._scope(tx) as tx:
            values = {
                "source_id": entry.source_id,
                "guid": entry.guid,
                "title": entry.title,
                "description": entry.description,
                "link": entry.link,
                "author": entry.author,
                "published_at": _dt_to_str(entry.published_at),
                "is_read": int(entry.is_read),
                "is_starred": int(entry.is_starred),
                "updated_at": _dt_to_str(_now()),
            }
            try:
                entry.id = _upsert_row(tx.conn, "entries", "guid", values, entry.id)
            except sqlite3.Error as e:
                raise ReconciliationError(
                    f"failed to upsert entry {entry.guid!r}: {e}"
                ) from e

            if cascade and entry.enclosure is not None:
                entry.enclosure.entry_id = entry.id
                self.upsert_enclosure(entry.enclosure, tx=tx)
        return entry

    def upsert_enclosure(
        self, enclosure: Enclosure, tx: Transaction | None = None
    ) -> Enclosure:
        """Insert or update an enclosure, found by its id or URL."""
        if not enclosure.url:
            raise ReconciliationError("enclosure has no url")
        if enclosure.entry_id is None:
            raise ReconciliationError(f"enclosure {enclosure.url!r} has no entry id")

        with _restore_ids_on_error(enclosure, owner=tx is None), self._scope(tx) as tx:
            values = {
                "entry_id": enclosure.entry_id,
                "url": enclosure.url,
                "mime_type": enclosure.mime_type,
                "length": enclosure.length,
                "file_path": enclosure.file_path,
            }
            try:
                enclosure.id = _upsert_row(
                    tx.conn, "enclosures", "url", values, enclosure.id
                )
            except sqlite3.Error as e:
                raise ReconciliationError(
                    f"failed to upsert enclosure {enclosure.url!r}: {e}"
                ) from e
        return enclosure

    # --- Source reads ---

    def get_source(self, source_id: int, with_entries: bool = False) -> Source | None:
        """Look up a source by its id."""
        row = self.conn.execute(
            "SELECT * FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return self._load_source(row, with_entries) if row else None

    def get_source_by_fetch_url(
        self, fetch_url: str, with_entries: bool = False
    ) -> Source | None:
        """Look up a source by the URL it is fetched from."""
        row = self.conn.execute(
            "SELECT * FROM sources WHERE fetch_url = ?", (fetch_url,)
        ).fetchone()
        return self._load_source(row, with_entries) if row else None

    def get_all_sources(self) -> list[Source]:
        """Return all sources, without entries."""
        rows = self.conn.execute("SELECT * FROM sources ORDER BY id").fetchall()
        return [_row_to_source(r) for r in rows]

    def delete_source(self, source_id: int) -> bool:
        """Delete a source with its entries and enclosures. Returns True if deleted."""
        cursor = self.conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def _load_source(self, row: sqlite3.Row, with_entries: bool) -> Source:
        source = _row_to_source(row)
        if with_entries:
            source.entries = self.get_entries_for_source(source.id)
        return source

    # --- Entry reads ---

    def get_entries_for_source(
        self, source_id: int, limit: int | None = None
    ) -> list[Entry]:
        """Get a source's entries, with enclosures, in the order they were first stored."""
        query = _ENTRY_QUERY + " WHERE entries.source_id = ? ORDER BY entries.id"
        params: list = [source_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [_row_to_entry(r) for r in rows]

    def get_entry_by_guid(self, guid: str) -> Entry | None:
        """Look up an entry, with its enclosure, by GUID."""
        row = self.conn.execute(
            _ENTRY_QUERY + " WHERE entries.guid = ?",
            (guid,),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def count_entries(self, source_id: int | None = None) -> int:
        """Count stored entries, optionally for one source."""
        query = "SELECT COUNT(*) as cnt FROM entries"
        params: list = []
        if source_id is not None:
            query += " WHERE source_id = ?"
            params.append(source_id)
        row = self.conn.execute(query, params).fetchone()
        return row["cnt"] if row else 0

    def mark_entries_read(self, entry_ids: list[int], read: bool = True) -> int:
        """Set or clear the read flag on entries. Returns count of affected rows."""
        return self._set_entry_flag("is_read", entry_ids, read)

    def star_entries(self, entry_ids: list[int], starred: bool = True) -> int:
        """Set or clear the starred flag on entries. Returns count of affected rows."""
        return self._set_entry_flag("is_starred", entry_ids, starred)

    def _set_entry_flag(self, column: str, entry_ids: list[int], value: bool) -> int:
        if not entry_ids:
            return 0
        placeholders = ",".join("?" for _ in entry_ids)
        cursor = self.conn.execute(
            f"UPDATE entries SET {column} = ? WHERE id IN ({placeholders}) AND {column} != ?",
            [int(value), *entry_ids, int(value)],
        )
        self.conn.commit()
        return cursor.rowcount

    # --- Enclosure reads ---

    def get_enclosure_by_url(self, url: str) -> Enclosure | None:
        """Look up an enclosure by its resource URL."""
        row = self.conn.execute(
            "SELECT * FROM enclosures WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_enclosure(row) if row else None

    def count_enclosures(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) as cnt FROM enclosures").fetchone()
        return row["cnt"] if row else 0

    def set_enclosure_file_path(self, enclosure_id: int, file_path: str | None) -> bool:
        """Record where a downloaded enclosure was saved. Returns True if updated."""
        cursor = self.conn.execute(
            "UPDATE enclosures SET file_path = ? WHERE id = ?",
            (file_path, enclosure_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0


# --- Helper functions ---

# An entry joined with its most recent enclosure
_ENTRY_QUERY = """
SELECT
    entries.*,
    enclosures.id AS enclosure_id,
    enclosures.url AS enclosure_url,
    enclosures.mime_type AS enclosure_mime_type,
    enclosures.length AS enclosure_length,
    enclosures.file_path AS enclosure_file_path
FROM entries
LEFT JOIN enclosures ON enclosures.id = (
    SELECT MAX(id) FROM enclosures WHERE entry_id = entries.id
)
"""


def _upsert_row(
    conn: sqlite3.Connection,
    table: str,
    key: str,
    values: dict,
    row_id: int | None,
) -> int:
    """Insert or overwrite one row, then return its id as found by natural key.

    The existing row is found by id or natural key, preferring an id match. If an
    INSERT loses a race on the natural key, the row that won is updated instead.
    Owned transactions start with BEGIN IMMEDIATE, which already serialises
    writers; the fallback covers callers writing outside such a transaction.
    """
    existing = conn.execute(
        f"SELECT id FROM {table} WHERE id = ? OR {key} = ? ORDER BY id = ? DESC LIMIT 1",
        (row_id, values[key], row_id),
    ).fetchone()

    if existing is None:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                list(values.values()),
            )
        except sqlite3.IntegrityError:
            existing = conn.execute(
                f"SELECT id FROM {table} WHERE {key} = ?", (values[key],)
            ).fetchone()
            if existing is None:
                raise
            logger.info("%s %r was inserted concurrently, updating instead", table, values[key])

    if existing is not None:
        assignments = ", ".join(f"{column} = ?" for column in values)
        conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [*values.values(), existing["id"]],
        )

    # INSERT and UPDATE don't report the affected id, so look it up again
    row = conn.execute(
        f"SELECT id FROM {table} WHERE {key} = ?", (values[key],)
    ).fetchone()
    if row is None:
        raise sqlite3.IntegrityError(f"{table} row {values[key]!r} vanished after write")
    return row["id"]


_IDENTITY_FIELDS = {
    Source: ("id",),
    Entry: ("id", "source_id"),
    Enclosure: ("id", "entry_id"),
}


@contextmanager
def _restore_ids_on_error(root: Source | Entry | Enclosure, owner: bool) -> Iterator[None]:
    """Put back the ids and parent ids a failed owning transaction wrote onto the document.

    Must wrap the transaction itself so a failed commit is covered too. Ids
    assigned inside a rolled-back transaction may be handed out again, so a
    retried document must resolve by natural key only.
    """
    if not owner:
        yield
        return
    saved = [
        (obj, {name: getattr(obj, name) for name in _IDENTITY_FIELDS[type(obj)]})
        for obj in _walk(root)
    ]
    try:
        yield
    except BaseException:
        for obj, fields in saved:
            for name, value in fields.items():
                setattr(obj, name, value)
        raise


def _walk(root: Source | Entry | Enclosure) -> Iterator[Source | Entry | Enclosure]:
    yield root
    if isinstance(root, Source):
        for entry in root.entries:
            yield from _walk(entry)
    elif isinstance(root, Entry) and root.enclosure is not None:
        yield root.enclosure


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_source(row: sqlite3.Row) -> Source:
    """Convert a database row to a Source dataclass."""
    return Source(
        id=row["id"],
        fetch_url=row["fetch_url"],
        title=row["title"],
        description=row["description"],
        link=row["link"],
        language=row["language"],
        ttl=row["ttl"],
        etag=row["etag"],
        last_modified=_str_to_dt(row["last_modified"]),
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a joined entries/enclosures row to an Entry dataclass."""
    enclosure = None
    if row["enclosure_id"] is not None:
        enclosure = Enclosure(
            id=row["enclosure_id"],
            entry_id=row["id"],
            url=row["enclosure_url"],
            mime_type=row["enclosure_mime_type"],
            length=row["enclosure_length"],
            file_path=row["enclosure_file_path"],
        )
    return Entry(
        id=row["id"],
        source_id=row["source_id"],
        guid=row["guid"],
        title=row["title"],
        description=row["description"],
        link=row["link"],
        author=row["author"],
        published_at=_str_to_dt(row["published_at"]),
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
        enclosure=enclosure,
    )


def _row_to_enclosure(row: sqlite3.Row) -> Enclosure:
    """Convert a database row to an Enclosure dataclass."""
    return Enclosure(
        id=row["id"],
        entry_id=row["entry_id"],
        url=row["url"],
        mime_type=row["mime_type"],
        length=row["length"],
        file_path=row["file_path"],
    )
