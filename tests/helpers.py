"""Shared builders for the refresher tests."""

from delegate import DelegationOutcome, RefreshDelegate
from models import Entry
from utils import now_ms

HOUR_MS = 3600 * 1000


def make_entry(entry_id, guid, pub_date, created_at=1_000, feed_title="Tech Weekly",
               feed_url="https://tech.example/feed"):
    return Entry(
        id=entry_id,
        feed_id=1,
        guid=guid,
        title=f"Entry {guid}",
        link=f"https://tech.example/{guid}",
        pub_date=pub_date,
        created_at=created_at,
        feed_title=feed_title,
        feed_url=feed_url,
    )


def entry_rows(guids, newest_pub_date):
    """Entry dicts for save_entries, pub dates descending in list order."""
    return [
        {
            "guid": guid,
            "title": f"Entry {guid}",
            "link": f"https://tech.example/{guid}",
            "pub_date": newest_pub_date - i * 60_000,
            "description": f"About {guid}",
        }
        for i, guid in enumerate(guids)
    ]


async def seed_feed(db, title, feed_url, last_fetched=None, entries=None, created_at=None):
    feed_id = await db.execute('register_feed', title=title, feed_url=feed_url)
    if entries:
        await db.execute('save_entries', feed_id=feed_id, entries_data=entries, created_at=created_at)
    if last_fetched is not None:
        await db.execute('update_last_fetched', feed_id=feed_id, fetched_at=last_fetched)
    return feed_id


class FakeWorkerDelegate(RefreshDelegate):
    """Stands in for the fetch worker by writing entries straight into the store."""

    def __init__(self, db, entries_by_title=None, fail_with=None, gate=None):
        self.db = db
        self.gate = gate
        self.entries_by_title = entries_by_title or {}
        self.fail_with = fail_with
        self.calls = []

    async def delegate(self, request, report, worker_signal=False):
        self.calls.append((request.batch_id, set(report.stale), set(report.missing)))
        cycle_started_at = now_ms()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with:
            return DelegationOutcome(True, False, cycle_started_at, self.fail_with)
        wanted = report.stale | report.missing
        for feed in request.feeds:
            if feed.post_title not in wanted:
                continue
            feed_id = await self.db.execute('register_feed', title=feed.post_title, feed_url=feed.feed_url)
            await self.db.execute(
                'save_entries',
                feed_id=feed_id,
                entries_data=self.entries_by_title.get(feed.post_title, []),
                created_at=now_ms(),
            )
            await self.db.execute('update_last_fetched', feed_id=feed_id)
        return DelegationOutcome(True, True, cycle_started_at)
