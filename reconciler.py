#!/usr/bin/env python3
"""
Entry reconciliation: which stored entries are new for this client.

After a refresh cycle the store may hold many entries for the requested
feeds. Only those created during the cycle and not already held by the
client are returned, with a safety valve so that a brand-new feed cannot
flood a client with its whole backlog.
"""

from typing import Dict, Iterable, List, Optional

from config import config, get_logger
from models import BatchRequest, DatabaseQueue, Entry, ReconciliationResult
from staleness import StalenessReport
from telemetry import trace_span
from utils import parse_timestamp_ms

logger = get_logger("reconciler")


def _newest_first(entries: Iterable[Entry]) -> List[Entry]:
    # id breaks pub_date ties so repeated runs return the same order
    return sorted(entries, key=lambda e: (e.pub_date, e.id), reverse=True)


def _apply_safety_cap(
    candidates: List[Entry],
    prior_last_fetched: Dict[str, Optional[int]],
    first_page: int,
) -> List[Entry]:
    """Secondary filtering once the candidate set is suspiciously large.

    Feeds never fetched before contribute only their most recent first page.
    Established feeds contribute only entries created after their own last
    fetch as it stood before this cycle.
    """
    by_feed: Dict[str, List[Entry]] = {}
    for entry in candidates:
        by_feed.setdefault(entry.feed_title or "", []).append(entry)

    kept: List[Entry] = []
    for title, entries in by_feed.items():
        cutoff = prior_last_fetched.get(title)
        if cutoff is None:
            kept.extend(_newest_first(entries)[:first_page])
        else:
            kept.extend(e for e in entries if e.created_at > cutoff)
    return kept


def select_new_entries(
    candidates: Iterable[Entry],
    existing_guids: Iterable[str],
    prior_last_fetched: Dict[str, Optional[int]],
    newest_entry_date=None,
    safety_cap: Optional[int] = None,
    first_page: Optional[int] = None,
    page_size: Optional[int] = None,
) -> ReconciliationResult:
    """Filter, order and page candidate entries for one batch.

    Args:
        candidates: Entries of the requested feeds inside the freshness window
        existing_guids: Guids the client already holds
        prior_last_fetched: Per feed title, last fetch before this cycle
            (None for feeds that had never been fetched)
        newest_entry_date: Client's newest known pubDate; unparseable values
            disable this filter
        safety_cap: Candidate count above which secondary filtering applies
        first_page: Entries a first-time feed may contribute under the cap
        page_size: Maximum entries returned

    Returns:
        ReconciliationResult with raw Entry objects, newest first.
    """
    safety_cap = safety_cap or config.RECONCILE_SAFETY_CAP
    first_page = first_page or config.NEW_FEED_FIRST_PAGE
    page_size = page_size or config.RESULT_PAGE_SIZE

    seen = set(existing_guids)
    filtered = [e for e in candidates if e.guid not in seen]

    if len(filtered) > safety_cap:
        before = len(filtered)
        filtered = _apply_safety_cap(filtered, prior_last_fetched, first_page)
        logger.info(f"Safety cap applied: {before} candidates reduced to {len(filtered)}")

    newest_ms = parse_timestamp_ms(newest_entry_date)
    if newest_ms is not None:
        filtered = [e for e in filtered if e.pub_date > newest_ms]
    elif newest_entry_date not in (None, ""):
        logger.debug(f"Ignoring unparseable newestEntryDate {newest_entry_date!r}")

    ordered = _newest_first(filtered)
    page = ordered[:page_size]
    return ReconciliationResult(
        entries=page,
        total_entries=len(ordered),
        has_more=len(ordered) > len(page),
    )


class EntryReconciler:
    """Load candidate entries for a batch and reduce them to the new ones."""

    def __init__(self, db: DatabaseQueue, safety_cap: Optional[int] = None,
                 first_page: Optional[int] = None, page_size: Optional[int] = None):
        self.db = db
        self.safety_cap = safety_cap
        self.first_page = first_page
        self.page_size = page_size

    @trace_span("reconciler.reconcile", tracer_name="reconciler",
                attr_from_args=lambda self, request, report, since: {"batch.id": request.batch_id})
    async def reconcile(self, request: BatchRequest, report: StalenessReport, since: int) -> ReconciliationResult:
        """Return the new entries for ``request``; empty on any internal error.

        Args:
            request: The batch being processed
            report: Pre-delegation staleness snapshot (per-feed cutoffs)
            since: Refresh cycle start in epoch ms; older entries are not new
        """
        titles = request.post_titles
        if not titles:
            return ReconciliationResult.empty()
        try:
            rows = await self.db.execute('query_recent_entries', titles=titles, since=since)
            candidates = [Entry.from_row(row) for row in rows]
            prior = {title: report.prior_last_fetched(title) for title in titles}
            result = select_new_entries(
                candidates,
                request.existing_guids,
                prior,
                newest_entry_date=request.newest_entry_date,
                safety_cap=self.safety_cap,
                first_page=self.first_page,
                page_size=self.page_size,
            )
        except Exception as e:
            logger.error(f"Reconciliation failed for batch {request.batch_id}: {e}")
            return ReconciliationResult.empty()

        logger.debug(
            f"Batch {request.batch_id}: {len(candidates)} candidates, "
            f"{result.total_entries} new, returning {len(result.entries)}"
        )
        return result
