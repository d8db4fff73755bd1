#!/usr/bin/env python3
"""
Per-feed refresh locks.

Two batches naming the same stale feed must not both send it to the fetch
worker. Before delegating, a batch locks the feeds it wants refreshed with a
single conditional UPDATE per feed (still stale, not locked by someone
else) and only delegates the feeds it locked. Locks expire on their own
after FEED_LOCK_SECONDS so a crashed batch cannot wedge a feed.
"""

from typing import List, Optional

from config import config, get_logger
from models import BatchRequest, DatabaseQueue
from staleness import StalenessReport
from utils import now_ms

logger = get_logger("feed_locks")


class FeedLocks:
    """Acquire and release refresh locks through the entry store."""

    def __init__(self, db: DatabaseQueue, lock_seconds: Optional[int] = None,
                 threshold_hours: Optional[float] = None):
        self.db = db
        self.lock_ms = int((lock_seconds or config.FEED_LOCK_SECONDS) * 1000)
        self.threshold_ms = int((threshold_hours or config.STALE_THRESHOLD_HOURS) * 3600 * 1000)

    async def acquire(self, request: BatchRequest, report: StalenessReport) -> List[str]:
        """Lock the stale and missing feeds of ``request``; returns the locked titles.

        If the store cannot be reached the lock is skipped and every wanted
        feed is returned, matching the fail-open staleness check.
        """
        wanted = report.stale | report.missing
        feeds = [
            {"title": f.post_title, "feed_url": f.feed_url, "media_type": f.media_type}
            for f in request.feeds if f.post_title in wanted
        ]
        if not feeds:
            return []
        now = now_ms()
        try:
            acquired = await self.db.execute(
                'acquire_feed_locks',
                feeds=feeds,
                lock_until=now + self.lock_ms,
                now=now,
                stale_before=now - self.threshold_ms,
            )
        except Exception as e:
            logger.warning(f"Feed lock unavailable for batch {request.batch_id}, refreshing unlocked: {e}")
            return sorted(wanted)

        skipped = len(feeds) - len(acquired)
        if skipped:
            logger.info(f"🔒 Batch {request.batch_id}: {skipped} feed(s) already being refreshed elsewhere")
        return acquired

    async def release(self, titles: List[str], refreshed: bool) -> None:
        """Release locks; never raises."""
        if not titles:
            return
        try:
            await self.db.execute('release_feed_locks', titles=list(titles), refreshed=refreshed)
        except Exception as e:
            logger.warning(f"Could not release {len(titles)} feed lock(s), they expire on their own: {e}")
