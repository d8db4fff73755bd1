#!/usr/bin/env python3
"""
Staleness detection for requested feeds.

Classifies each requested feed title as stale (known, but not fetched within
the threshold), missing (no record yet) or fresh. The result is advisory: if
the store cannot be read the detector fails open and reports nothing to do.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from config import config, get_logger
from models import DatabaseQueue, FeedRecord
from telemetry import trace_span
from utils import now_ms

logger = get_logger("staleness")


@dataclass
class StalenessReport:
    stale: Set[str] = field(default_factory=set)
    missing: Set[str] = field(default_factory=set)
    # Feed records as they were before any delegation, keyed by title
    records: Dict[str, FeedRecord] = field(default_factory=dict)

    @property
    def needs_refresh(self) -> bool:
        return bool(self.stale or self.missing)

    def restricted_to(self, titles: Iterable[str]) -> "StalenessReport":
        """Same snapshot, with only ``titles`` left to refresh."""
        keep = set(titles)
        return StalenessReport(stale=self.stale & keep, missing=self.missing & keep, records=self.records)

    def prior_last_fetched(self, title: str) -> Optional[int]:
        record = self.records.get(title)
        return record.last_fetched if record else None


class StalenessDetector:
    """Compare each feed's last fetch time against a fixed threshold."""

    def __init__(self, db: DatabaseQueue, threshold_hours: Optional[float] = None):
        self.db = db
        self.threshold_ms = int((threshold_hours or config.STALE_THRESHOLD_HOURS) * 3600 * 1000)

    def classify(self, titles: Iterable[str], rows: Iterable[dict], now: Optional[int] = None) -> StalenessReport:
        """Build a report from store rows without touching the store."""
        cutoff = (now if now is not None else now_ms()) - self.threshold_ms
        report = StalenessReport()
        for row in rows:
            record = FeedRecord.from_row(row)
            report.records[record.title] = record
        for title in titles:
            record = report.records.get(title)
            if record is None:
                report.missing.add(title)
            elif record.last_fetched is None or record.last_fetched < cutoff:
                report.stale.add(title)
        return report

    @trace_span("staleness.detect", tracer_name="staleness",
                attr_from_args=lambda self, titles: {"feed.count": len(titles)})
    async def detect(self, titles: list) -> StalenessReport:
        """Classify the given feed titles; never raises on store errors."""
        if not titles:
            return StalenessReport()
        try:
            rows = await self.db.execute('get_feeds_by_titles', titles=list(titles))
        except Exception as e:
            logger.warning(f"Staleness check failed, treating {len(titles)} feeds as fresh: {e}")
            return StalenessReport()

        report = self.classify(titles, rows)
        logger.debug(
            f"Staleness: {len(report.stale)} stale, {len(report.missing)} missing "
            f"of {len(titles)} requested"
        )
        return report
