#!/usr/bin/env python3
"""
Queue consumer: runs the refresh pipeline for each batch message.

Per message: validate, detect stale/missing feeds, delegate the refresh when
needed, reconcile new entries, enrich them, write the terminal status and
push it to real-time subscribers. Messages are processed one after another
and a failure in one never stops the rest.
"""

from dataclasses import dataclass
from time import monotonic
from typing import Any, Dict, List, Optional

from config import config, get_logger
from delegate import RefreshDelegate, create_delegate
from enrichment import MetadataEnricher
from errors import DelegationError, InvalidMessageError
from feed_locks import FeedLocks
from messages import extract_batch_id, parse_batch_request
from models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BatchRequest,
    BatchStatus,
    DatabaseQueue,
    ReconciliationResult,
)
from notifier import Notifier
from reconciler import EntryReconciler
from staleness import StalenessDetector
from status_store import BatchStatusStore
from telemetry import trace_span
from utils import TTLCache, ms_to_iso, now_ms

logger = get_logger("consumer")


@dataclass
class ConsumerReport:
    processed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "processed": self.processed, "failed": self.failed}


class QueueConsumer:
    """Orchestrates the per-batch refresh pipeline.

    Collaborators are injectable; anything not supplied is built from the
    global configuration. The metadata cache belongs to the consumer so it
    lives exactly as long as the process context that owns the consumer.
    """

    def __init__(
        self,
        db: DatabaseQueue,
        status_store: BatchStatusStore,
        notifier: Notifier,
        delegate: Optional[RefreshDelegate] = None,
        detector: Optional[StalenessDetector] = None,
        reconciler: Optional[EntryReconciler] = None,
        enricher: Optional[MetadataEnricher] = None,
        metadata_cache: Optional[TTLCache] = None,
        feed_locks: Optional[FeedLocks] = None,
    ):
        self.db = db
        self.status_store = status_store
        self.notifier = notifier
        self.delegate = delegate or create_delegate()
        self.detector = detector or StalenessDetector(db)
        self.reconciler = reconciler or EntryReconciler(db)
        self.feed_locks = feed_locks or FeedLocks(db)
        self.metadata_cache = metadata_cache or TTLCache(config.METADATA_CACHE_SIZE, config.METADATA_CACHE_TTL)
        self.enricher = enricher or MetadataEnricher(cache=self.metadata_cache)

    async def close(self) -> None:
        await self.delegate.close()
        await self.enricher.close()

    async def process_batch(self, bodies: List[Any], worker_signal: bool = False) -> ConsumerReport:
        """Process every message body in order and report aggregate counts."""
        report = ConsumerReport()
        logger.info(f"📥 Processing {len(bodies)} queue message(s)")
        for body in bodies:
            if await self.process_message(body, worker_signal=worker_signal):
                report.processed += 1
            else:
                report.failed += 1
        logger.info(f"✅ Queue batch done: {report.processed} processed, {report.failed} failed")
        return report

    @trace_span("consumer.process_message", tracer_name="consumer")
    async def process_message(self, body: Any, worker_signal: bool = False) -> bool:
        """Run one message through the pipeline; returns True if it completed."""
        received_at = now_ms()
        try:
            request = parse_batch_request(body)
        except InvalidMessageError as e:
            logger.warning(f"❌ Invalid queue message (batch {e.batch_id or '<none>'}): {e}")
            if e.batch_id:
                await self._record(self._failed(e.batch_id, received_at, received_at, str(e)))
            return False
        except Exception as e:
            batch_id = extract_batch_id(body)
            logger.error(f"❌ Unreadable queue message (batch {batch_id or '<none>'}): {e!r}")
            if batch_id:
                await self._record(self._failed(batch_id, received_at, received_at, f"Invalid message: {e}"))
            return False

        queued_at = request.queued_at or received_at
        processed_at = now_ms()
        try:
            status = await self._run_pipeline(request, queued_at, processed_at, worker_signal)
        except Exception as e:
            logger.error(f"❌ Batch {request.batch_id} failed: {e}")
            status = self._failed(request.batch_id, queued_at, processed_at, str(e))

        await self._record(status)
        return status.status == STATUS_COMPLETED

    async def _run_pipeline(self, request: BatchRequest, queued_at: int, processed_at: int,
                            worker_signal: bool) -> BatchStatus:
        started = monotonic()
        titles = request.post_titles

        report = await self.detector.detect(titles)
        if not report.needs_refresh:
            logger.debug(f"Batch {request.batch_id}: all {len(titles)} feeds fresh")
            return self._completed(request, queued_at, processed_at, started, ReconciliationResult.empty(), [], False)

        locked: List[str] = []
        if self.delegate.uses_feed_locks:
            locked = await self.feed_locks.acquire(request, report)
            if not locked:
                logger.info(f"Batch {request.batch_id}: feeds needing refresh are locked by other batches")
                return self._completed(request, queued_at, processed_at, started, ReconciliationResult.empty(), [], False)
            report = report.restricted_to(locked)

        try:
            outcome = await self.delegate.delegate(request, report, worker_signal)
        except Exception:
            await self.feed_locks.release(locked, refreshed=False)
            raise
        await self.feed_locks.release(locked, refreshed=outcome.delegated and outcome.succeeded)

        if outcome.delegated and not outcome.succeeded:
            raise DelegationError(outcome.error or "Refresh delegation failed")
        if not outcome.delegated:
            return self._completed(request, queued_at, processed_at, started, ReconciliationResult.empty(), [], False)

        result = await self.reconciler.reconcile(request, report, since=outcome.cycle_started_at)
        display = await self.enricher.enrich(result.entries)
        logger.info(
            f"✅ Batch {request.batch_id}: {len(display)} new entries "
            f"({result.total_entries} total) from {len(report.stale)} stale / {len(report.missing)} new feeds"
        )
        return self._completed(request, queued_at, processed_at, started, result, display, True)

    def _completed(self, request: BatchRequest, queued_at: int, processed_at: int, started: float,
                   result: ReconciliationResult, display: list, refreshed_any: bool) -> BatchStatus:
        completed_at = now_ms()
        return BatchStatus(
            batch_id=request.batch_id,
            status=STATUS_COMPLETED,
            queued_at=queued_at,
            processed_at=processed_at,
            completed_at=completed_at,
            result={
                "entries": [d.to_dict() for d in display],
                "newEntriesCount": len(display),
                "totalEntries": result.total_entries,
                "hasMore": result.has_more,
                "refreshedAny": refreshed_any,
                "postTitles": request.post_titles,
                "refreshTimestamp": ms_to_iso(completed_at),
                "processingTimeMs": int((monotonic() - started) * 1000),
            },
        )

    @staticmethod
    def _failed(batch_id: str, queued_at: int, processed_at: int, error: str) -> BatchStatus:
        return BatchStatus(
            batch_id=batch_id,
            status=STATUS_FAILED,
            queued_at=queued_at,
            processed_at=processed_at,
            completed_at=now_ms(),
            error=error,
        )

    async def _record(self, status: BatchStatus) -> None:
        """Write the status, then push it; neither step may raise."""
        payload = status.to_dict()
        try:
            written = await self.status_store.write(status.batch_id, payload)
        except Exception as e:
            logger.error(f"Could not store status for batch {status.batch_id}: {e}")
            written = True
        if written:
            self.notifier.notify(status.batch_id, payload)
