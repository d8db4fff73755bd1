#!/usr/bin/env python3
"""
Domain types and database operations for the feed refresher.

The dataclasses describe what flows through the refresh pipeline (batch
requests, feed records, entries, reconciliation results and batch status
records). The DatabaseQueue serializes access to the SQLite entry store that
the external fetch worker writes to and the pipeline reads from.
"""

from dataclasses import dataclass, field
from os import path, access, R_OK
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span
from utils import now_ms, ms_to_iso

# Module-specific logger
logger = get_logger("models")

# SQLite caps bound parameters per statement; stay well below the lowest default
_IN_CLAUSE_CHUNK = 500

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


# ----------------------------------------------------------------------
# Domain types
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class FeedRef:
    """A feed as named by a client request."""
    post_title: str
    feed_url: str
    media_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"postTitle": self.post_title, "feedUrl": self.feed_url}
        if self.media_type:
            data["mediaType"] = self.media_type
        return data


@dataclass
class BatchRequest:
    """One client-initiated refresh for a set of feeds.

    ``batch_id`` keys status reporting only; entry storage never uses it.
    ``newest_entry_date`` is kept as received and parsed by the reconciler so
    that an unparseable value simply disables that filter.
    """
    batch_id: str
    feeds: List[FeedRef]
    existing_guids: List[str] = field(default_factory=list)
    newest_entry_date: Any = None
    user_id: Optional[str] = None
    priority: Optional[str] = None
    retry_count: int = 0
    queued_at: Optional[int] = None
    worker_result: bool = False
    refresh_started_at: Optional[int] = None

    @property
    def post_titles(self) -> List[str]:
        seen = []
        for feed in self.feeds:
            if feed.post_title not in seen:
                seen.append(feed.post_title)
        return seen


@dataclass
class FeedRecord:
    id: int
    title: str
    feed_url: str
    media_type: Optional[str]
    last_fetched: Optional[int]
    entry_count: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FeedRecord":
        return cls(
            id=row["id"],
            title=row["title"],
            feed_url=row["feed_url"],
            media_type=row.get("media_type"),
            last_fetched=row.get("last_fetched"),
            entry_count=row.get("entry_count") or 0,
        )


@dataclass
class Entry:
    id: int
    feed_id: int
    guid: str
    title: str
    link: str
    pub_date: int
    created_at: int
    description: Optional[str] = None
    content: Optional[str] = None
    image: Optional[str] = None
    media_type: Optional[str] = None
    feed_title: Optional[str] = None
    feed_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entry":
        return cls(
            id=row["id"],
            feed_id=row["feed_id"],
            guid=row["guid"],
            title=row.get("title") or "",
            link=row.get("link") or "",
            pub_date=row["pub_date"],
            created_at=row["created_at"],
            description=row.get("description"),
            content=row.get("content"),
            image=row.get("image"),
            media_type=row.get("media_type") or row.get("feed_media_type"),
            feed_title=row.get("feed_title"),
            feed_url=row.get("feed_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "feedId": self.feed_id,
            "guid": self.guid,
            "title": self.title,
            "link": self.link,
            "pubDate": ms_to_iso(self.pub_date),
            "description": self.description or "",
            "content": self.content or "",
            "image": self.image,
            "mediaType": self.media_type,
            "feedTitle": self.feed_title,
            "feedUrl": self.feed_url,
            "createdAt": self.created_at,
        }


@dataclass
class DisplayEntry:
    """An entry plus best-effort display metadata."""
    entry: Entry
    interaction_counts: Dict[str, int]
    post_metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "interactionCounts": dict(self.interaction_counts),
            "postMetadata": dict(self.post_metadata),
        }


@dataclass
class ReconciliationResult:
    entries: List[Any] = field(default_factory=list)
    total_entries: int = 0
    has_more: bool = False

    @classmethod
    def empty(cls) -> "ReconciliationResult":
        return cls()


@dataclass
class BatchStatus:
    """Terminal outcome of one batch, as stored and pushed to subscribers."""
    batch_id: str
    status: str
    queued_at: int
    processed_at: int
    completed_at: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "batchId": self.batch_id,
            "status": self.status,
            "queuedAt": self.queued_at,
            "processedAt": self.processed_at,
            "completedAt": self.completed_at,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


# ----------------------------------------------------------------------
# Schema management
# ----------------------------------------------------------------------

def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='entries'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
        _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()
    try:
        # Migration 1: per-feed refresh lock
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'processing_until' not in columns:
            logger.info("Adding processing_until column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN processing_until INTEGER NOT NULL DEFAULT 0")
            conn.commit()
            logger.info("Migration completed: added processing_until column")
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _chunks(values: List[Any], size: int = _IN_CLAUSE_CHUNK) -> Iterable[List[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


# ----------------------------------------------------------------------
# Entry store
# ----------------------------------------------------------------------

class DatabaseQueue:
    """A queue for database operations to keep SQLite access on one connection.

    Operations are plain methods on this class, invoked by name through
    ``await execute("method_name", **params)``. Failures surface as StoreError
    so each caller decides whether to fail open or propagate.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if not operation_name.startswith("_") and hasattr(self, operation_name):
                        method = getattr(self, operation_name)
                        self.results[operation_id] = {"result": method(**params)}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn is not None and self.conn.in_transaction:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StoreError: If the worker is not running or the operation failed.
        """
        if not self.running:
            raise StoreError(f"Database worker not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise StoreError(result["error"], {"operation": operation_name})
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed operations
    def register_feed(self, title: str, feed_url: str, media_type: Optional[str] = None) -> int:
        """Insert a feed if unknown and return its id."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (title, feed_url, media_type, created_at) VALUES (?, ?, ?, ?)",
                (title, feed_url, media_type, now_ms()),
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM feeds WHERE feed_url = ? OR title = ?", (feed_url, title))
            return cursor.fetchone()["id"]
        finally:
            cursor.close()

    def get_feeds_by_titles(self, titles: List[str]) -> List[Dict[str, Any]]:
        """Return feed records for the given titles (unknown titles are absent)."""
        unique = list(dict.fromkeys(t for t in titles if t))
        if not unique:
            return []
        rows: List[Dict[str, Any]] = []
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(unique):
                placeholders = ','.join('?' for _ in chunk)
                cursor.execute(
                    f"""
                    SELECT id, title, feed_url, media_type, last_fetched, entry_count
                    FROM feeds WHERE title IN ({placeholders})
                    """,
                    chunk,
                )
                rows.extend(dict(row) for row in cursor.fetchall())
            return rows
        finally:
            cursor.close()

    def update_last_fetched(self, feed_id: int, fetched_at: Optional[int] = None) -> bool:
        """Record a successful fetch for a feed (epoch milliseconds)."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_fetched = ? WHERE id = ?",
                (fetched_at if fetched_at is not None else now_ms(), feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def acquire_feed_locks(self, feeds: List[Dict[str, Any]], lock_until: int, now: int, stale_before: int) -> List[str]:
        """Lock each feed for refresh if it is still stale and not already locked.

        Unknown feeds are registered first so they can be locked like any
        other. Staleness is re-checked in the same UPDATE as the lock, so a
        feed refreshed by a concurrent batch since it was classified is left
        alone.

        Returns:
            Titles of the feeds this call locked.
        """
        acquired: List[str] = []
        cursor = self.conn.cursor()
        try:
            for feed in feeds:
                cursor.execute(
                    "INSERT OR IGNORE INTO feeds (title, feed_url, media_type, created_at) VALUES (?, ?, ?, ?)",
                    (feed['title'], feed['feed_url'], feed.get('media_type'), now),
                )
                cursor.execute(
                    """
                    UPDATE feeds SET processing_until = ?
                    WHERE title = ?
                      AND processing_until < ?
                      AND (last_fetched IS NULL OR last_fetched < ?)
                    """,
                    (lock_until, feed['title'], now, stale_before),
                )
                if cursor.rowcount > 0:
                    acquired.append(feed['title'])
            self.conn.commit()
            return acquired
        finally:
            cursor.close()

    def release_feed_locks(self, titles: List[str], refreshed: bool, fetched_at: Optional[int] = None) -> int:
        """Clear refresh locks; a successful refresh also stamps last_fetched."""
        unique = list(dict.fromkeys(t for t in titles if t))
        if not unique:
            return 0
        released = 0
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(unique):
                placeholders = ','.join('?' for _ in chunk)
                if refreshed:
                    cursor.execute(
                        f"UPDATE feeds SET processing_until = 0, last_fetched = ? WHERE title IN ({placeholders})",
                        [fetched_at if fetched_at is not None else now_ms()] + chunk,
                    )
                else:
                    cursor.execute(
                        f"UPDATE feeds SET processing_until = 0 WHERE title IN ({placeholders})",
                        chunk,
                    )
                released += cursor.rowcount
            self.conn.commit()
            return released
        finally:
            cursor.close()

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds ordered by title."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id, title, feed_url, media_type, last_fetched, entry_count FROM feeds ORDER BY title"
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Entry operations
    def save_entries(self, feed_id: int, entries_data: List[Dict[str, Any]], created_at: Optional[int] = None) -> int:
        """Insert entries for a feed, ignoring guids that already exist.

        Returns:
            Number of newly inserted entries.
        """
        stamp = created_at if created_at is not None else now_ms()
        new_items = 0
        cursor = self.conn.cursor()
        try:
            for entry_data in entries_data:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO entries
                        (feed_id, guid, title, link, pub_date, description, content, image, media_type, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feed_id,
                        entry_data['guid'],
                        entry_data.get('title') or '',
                        entry_data.get('link') or '',
                        entry_data['pub_date'],
                        entry_data.get('description'),
                        entry_data.get('content'),
                        entry_data.get('image'),
                        entry_data.get('media_type'),
                        entry_data.get('created_at', stamp),
                    ),
                )
                if cursor.rowcount > 0:
                    new_items += 1
            cursor.execute(
                "UPDATE feeds SET entry_count = (SELECT COUNT(*) FROM entries WHERE feed_id = ?) WHERE id = ?",
                (feed_id, feed_id),
            )
            self.conn.commit()
            return new_items
        finally:
            cursor.close()

    def query_recent_entries(self, titles: List[str], since: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries of the named feeds created at or after ``since`` (epoch ms).

        Rows are ordered newest first by pub_date, then by id, and carry the
        owning feed's title, URL and media type.
        """
        unique = list(dict.fromkeys(t for t in titles if t))
        if not unique:
            return []
        scan_limit = limit or config.RECONCILE_SCAN_LIMIT
        rows: List[Dict[str, Any]] = []
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(unique):
                placeholders = ','.join('?' for _ in chunk)
                cursor.execute(
                    f"""
                    SELECT
                        e.id, e.feed_id, e.guid, e.title, e.link, e.pub_date, e.description,
                        e.content, e.image, e.media_type, e.created_at,
                        f.title AS feed_title, f.feed_url AS feed_url, f.media_type AS feed_media_type
                    FROM entries e
                    JOIN feeds f ON f.id = e.feed_id
                    WHERE f.title IN ({placeholders}) AND e.created_at >= ?
                    ORDER BY e.pub_date DESC, e.id DESC
                    LIMIT ?
                    """,
                    chunk + [since, scan_limit],
                )
                chunk_rows = cursor.fetchall()
                if len(chunk_rows) >= scan_limit:
                    logger.warning(
                        f"Entry scan hit RECONCILE_SCAN_LIMIT ({scan_limit}) for {len(chunk)} feeds; "
                        f"older candidates are not counted"
                    )
                rows.extend(dict(row) for row in chunk_rows)
            if len(rows) > scan_limit:
                rows.sort(key=lambda r: (r['pub_date'], r['id']), reverse=True)
                rows = rows[:scan_limit]
            return rows
        finally:
            cursor.close()

    def count_entries(self) -> int:
        """Count the total number of stored entries."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) AS n FROM entries")
            return cursor.fetchone()["n"]
        finally:
            cursor.close()
