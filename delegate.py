#!/usr/bin/env python3
"""
Refresh delegation to the external fetch worker.

The pipeline never fetches or parses feeds itself. It either calls the
worker and waits for it (inline mode) or trusts a signal on the inbound
request saying the worker already ran (signal mode). In both cases the
outcome carries the refresh cycle start, which bounds which stored entries
count as new for this batch.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from models import BatchRequest
from staleness import StalenessReport
from telemetry import trace_span
from utils import now_ms

logger = get_logger("delegate")


@dataclass
class DelegationOutcome:
    delegated: bool
    succeeded: bool
    cycle_started_at: int
    error: Optional[str] = None

    @classmethod
    def skipped(cls) -> "DelegationOutcome":
        return cls(delegated=False, succeeded=False, cycle_started_at=now_ms())


class RefreshDelegate:
    """Interface for handing stale and missing feeds to the fetch worker."""

    # Whether this delegate starts refreshes itself and so must hold feed locks
    uses_feed_locks = True

    async def delegate(self, request: BatchRequest, report: StalenessReport, worker_signal: bool = False) -> DelegationOutcome:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def _feeds_to_refresh(request: BatchRequest, report: StalenessReport) -> list:
    wanted = report.stale | report.missing
    return [feed.to_dict() for feed in request.feeds if feed.post_title in wanted]


class HttpRefreshDelegate(RefreshDelegate):
    """Synchronous inline delegation: POST to the worker and await its reply."""

    def __init__(self, worker_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[ClientSession] = None):
        self.worker_url = worker_url or config.WORKER_URL
        self.timeout = ClientTimeout(total=timeout or config.WORKER_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": config.USER_AGENT},
            )
            self._owns_session = True
        return self._session

    @trace_span("delegate.inline", tracer_name="delegate",
                attr_from_args=lambda self, request, report, worker_signal=False: {
                    "batch.id": request.batch_id,
                    "feed.stale": len(report.stale),
                    "feed.missing": len(report.missing),
                })
    async def delegate(self, request: BatchRequest, report: StalenessReport, worker_signal: bool = False) -> DelegationOutcome:
        # Recorded before the call so entries the worker writes are inside the window
        cycle_started_at = now_ms()
        if not self.worker_url:
            logger.error("WORKER_URL is not configured; cannot delegate refresh")
            return DelegationOutcome(True, False, cycle_started_at, "Fetch worker is not configured")

        payload = {
            "batchId": request.batch_id,
            "feeds": _feeds_to_refresh(request, report),
            "staleTitles": sorted(report.stale),
            "missingTitles": sorted(report.missing),
            "cycleStartedAt": cycle_started_at,
        }
        session = await self._get_session()
        try:
            async with session.post(self.worker_url, json=payload, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.warning(f"Worker rejected batch {request.batch_id}: HTTP {resp.status} {text[:200]}")
                    return DelegationOutcome(True, False, cycle_started_at, f"Worker returned HTTP {resp.status}")
                body = None
                if resp.content_type == "application/json":
                    body = await resp.json()
        except (ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Worker call failed for batch {request.batch_id}: {e!r}")
            return DelegationOutcome(True, False, cycle_started_at, f"Worker call failed: {e!r}")

        if isinstance(body, dict) and body.get("success") is False:
            error = str(body.get("error") or "Worker reported failure")
            logger.warning(f"Worker reported failure for batch {request.batch_id}: {error}")
            return DelegationOutcome(True, False, cycle_started_at, error)

        logger.info(f"Worker refreshed {len(payload['feeds'])} feeds for batch {request.batch_id}")
        return DelegationOutcome(True, True, cycle_started_at)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


class SignalRefreshDelegate(RefreshDelegate):
    """Asynchronous delegation: the worker ran elsewhere and flagged the request."""

    uses_feed_locks = False

    def __init__(self, window_seconds: Optional[int] = None):
        self.window_ms = int((window_seconds or config.FRESHNESS_WINDOW_SECONDS) * 1000)

    async def delegate(self, request: BatchRequest, report: StalenessReport, worker_signal: bool = False) -> DelegationOutcome:
        if not (worker_signal or request.worker_result):
            logger.info(f"Batch {request.batch_id} needs refresh but carries no worker result; skipping reconciliation")
            return DelegationOutcome.skipped()
        started = request.refresh_started_at
        if started is None:
            started = now_ms() - self.window_ms
        return DelegationOutcome(delegated=True, succeeded=True, cycle_started_at=started)


def create_delegate(mode: Optional[str] = None) -> RefreshDelegate:
    mode = mode or config.DELEGATION_MODE
    if mode == "signal":
        return SignalRefreshDelegate()
    return HttpRefreshDelegate()
