import asyncio
from sqlite3 import connect

import pytest

from consumer import QueueConsumer
from enrichment import MetadataEnricher
from feed_locks import FeedLocks
from models import BatchRequest, DatabaseQueue, FeedRef
from notifier import HubNotifier
from realtime import BatchStatusHub
from staleness import StalenessReport
from status_store import MemoryStatusStore
from utils import now_ms

from helpers import HOUR_MS, FakeWorkerDelegate, entry_rows, seed_feed

TECH = {"title": "Tech Weekly", "feed_url": "https://tech.example/feed"}


@pytest.mark.asyncio
async def test_second_lock_on_same_feed_is_refused(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        now = now_ms()
        first = await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 60_000, now=now,
                                 stale_before=now - 4 * HOUR_MS)
        second = await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 60_000, now=now,
                                  stale_before=now - 4 * HOUR_MS)

        assert first == ["Tech Weekly"]
        assert second == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_again(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        now = now_ms()
        await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 1_000, now=now,
                         stale_before=now - 4 * HOUR_MS)

        later = now + 2_000
        again = await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=later + 1_000, now=later,
                                 stale_before=later - 4 * HOUR_MS)

        assert again == ["Tech Weekly"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_fresh_feed_is_not_locked(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        now = now_ms()
        await seed_feed(db, TECH["title"], TECH["feed_url"], last_fetched=now - 60_000)

        acquired = await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 60_000, now=now,
                                    stale_before=now - 4 * HOUR_MS)

        assert acquired == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_release_after_refresh_stamps_last_fetched(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        now = now_ms()
        await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 60_000, now=now,
                         stale_before=now - 4 * HOUR_MS)

        await db.execute('release_feed_locks', titles=["Tech Weekly"], refreshed=True, fetched_at=now)
        feed = (await db.execute('get_feeds_by_titles', titles=["Tech Weekly"]))[0]

        assert feed["last_fetched"] == now
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failed_release_leaves_feed_stale_and_unlocked(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        locks = FeedLocks(db, lock_seconds=300, threshold_hours=4)
        request = BatchRequest(batch_id="b1", feeds=[FeedRef("Tech Weekly", TECH["feed_url"])])
        report = StalenessReport(missing={"Tech Weekly"})

        assert await locks.acquire(request, report) == ["Tech Weekly"]
        await locks.release(["Tech Weekly"], refreshed=False)

        assert await locks.acquire(request, report) == ["Tech Weekly"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_locks_fail_open_when_store_is_down(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))  # never started
    locks = FeedLocks(db)
    request = BatchRequest(batch_id="b1", feeds=[FeedRef("Tech Weekly", TECH["feed_url"])])

    acquired = await locks.acquire(request, StalenessReport(stale={"Tech Weekly"}))
    await locks.release(acquired, refreshed=True)

    assert acquired == ["Tech Weekly"]


@pytest.mark.asyncio
async def test_overlapping_batches_refresh_a_feed_once(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        gate = asyncio.Event()
        delegate = FakeWorkerDelegate(db, {"Tech Weekly": entry_rows(["g2", "g1"], now_ms())}, gate=gate)
        store = MemoryStatusStore(ttl_seconds=300)
        consumer = QueueConsumer(db, store, HubNotifier(BatchStatusHub()), delegate=delegate,
                                 enricher=MetadataEnricher(base_url=""))
        message = {"feeds": [{"postTitle": "Tech Weekly", "feedUrl": TECH["feed_url"]}]}

        first = asyncio.create_task(consumer.process_message({"batchId": "o1", **message}))
        while not delegate.calls:
            await asyncio.sleep(0.01)
        assert await consumer.process_message({"batchId": "o2", **message}) is True
        gate.set()
        assert await first is True

        assert [call[0] for call in delegate.calls] == ["o1"]
        second = await store.read("o2")
        assert second["result"]["entries"] == []
        assert second["result"]["refreshedAny"] is False
        first_result = (await store.read("o1"))["result"]
        assert [d["entry"]["guid"] for d in first_result["entries"]] == ["g2", "g1"]
        feed = (await db.execute('get_feeds_by_titles', titles=["Tech Weekly"]))[0]
        assert feed["last_fetched"] is not None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_existing_database_gains_lock_column(tmp_path):
    path = str(tmp_path / "old.db")
    conn = connect(path)
    conn.executescript(
        """
        CREATE TABLE feeds (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL UNIQUE,
            feed_url TEXT NOT NULL UNIQUE, media_type TEXT, last_fetched INTEGER,
            entry_count INTEGER NOT NULL DEFAULT 0, created_at INTEGER NOT NULL);
        CREATE TABLE entries (id INTEGER PRIMARY KEY AUTOINCREMENT, feed_id INTEGER NOT NULL,
            guid TEXT NOT NULL, title TEXT NOT NULL DEFAULT '', link TEXT NOT NULL DEFAULT '',
            pub_date INTEGER NOT NULL, description TEXT, content TEXT, image TEXT, media_type TEXT,
            created_at INTEGER NOT NULL, UNIQUE (feed_id, guid));
        """
    )
    conn.close()

    db = DatabaseQueue(path)
    await db.start()
    try:
        now = now_ms()
        acquired = await db.execute('acquire_feed_locks', feeds=[TECH], lock_until=now + 60_000, now=now,
                                    stale_before=now - 4 * HOUR_MS)
        assert acquired == ["Tech Weekly"]
    finally:
        await db.stop()
