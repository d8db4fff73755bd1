#!/usr/bin/env python3
"""
Per-batch real-time status fan-out.

REALTIME CONTRACT

The queue consumer pushes each terminal batch status to a per-batch channel
(directly through HubNotifier, or over HTTP to POST /api/batch-status/{id}).
Clients waiting on a batch open

    GET /api/batch-stream/{batchId}      (Server-Sent Events)

and receive:

    event: connected   data: {"batchId": "..."}
    event: status      data: <status record, or {"status": "queued"} if none yet>
    ...                (": keep-alive" comments while waiting)
    event: status      data: <terminal status record>   -> stream closes
    event: timeout     data: {"batchId": "..."}          -> after SSE_MAX_WAIT_SECONDS

Polling GET /api/batch-status/{batchId} remains available; the stream only
saves clients from polling.
"""

import asyncio
import json
from time import monotonic
from typing import Any, Callable, Dict, Optional, Set, Tuple

from aiohttp import web

from config import config, get_logger
from errors import StatusStoreError
from models import STATUS_COMPLETED, STATUS_FAILED

logger = get_logger("realtime")

TERMINAL_STATES = (STATUS_COMPLETED, STATUS_FAILED)

HUB_KEY = web.AppKey("hub", object)
STATUS_STORE_KEY = web.AppKey("status_store", object)


def is_terminal(status: Optional[Dict[str, Any]]) -> bool:
    return bool(status) and status.get("status") in TERMINAL_STATES


class BatchStatusHub:
    """In-process actor keyed by batch id.

    Keeps the last published status per batch for ``retain_seconds`` so a
    subscriber arriving just after the push still sees it, and forwards every
    publish to the live subscribers of that batch.
    """

    def __init__(self, retain_seconds: Optional[float] = None, clock: Callable[[], float] = monotonic):
        self.retain_seconds = retain_seconds or config.STATUS_TTL_SECONDS
        self._clock = clock
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._last: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def publish(self, batch_id: str, status: Dict[str, Any]) -> int:
        """Record and fan out a status; returns the number of live subscribers."""
        now = self._clock()
        self._expire(now)
        self._last[batch_id] = (now + self.retain_seconds, status)
        queues = self._subscribers.get(batch_id, set())
        for queue in queues:
            queue.put_nowait(status)
        return len(queues)

    def last_status(self, batch_id: str) -> Optional[Dict[str, Any]]:
        item = self._last.get(batch_id)
        if item is None:
            return None
        expires_at, status = item
        if expires_at <= self._clock():
            del self._last[batch_id]
            return None
        return status

    def subscribe(self, batch_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(batch_id, set()).add(queue)
        return queue

    def unsubscribe(self, batch_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(batch_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[batch_id]

    def subscriber_count(self, batch_id: str) -> int:
        return len(self._subscribers.get(batch_id, ()))

    def _expire(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._last.items() if expires_at <= now]
        for k in expired:
            del self._last[k]


def _sse_frame(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


async def stream_batch_status(request: web.Request) -> web.StreamResponse:
    """SSE handler for a single batch's status."""
    batch_id = request.match_info["batchId"]
    hub: BatchStatusHub = request.app[HUB_KEY]
    store = request.app[STATUS_STORE_KEY]
    heartbeat = config.SSE_HEARTBEAT_SECONDS
    max_wait = config.SSE_MAX_WAIT_SECONDS

    resp = web.StreamResponse(headers={
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    })
    await resp.prepare(request)

    # Subscribe before the lookup so a publish in between is not lost
    queue = hub.subscribe(batch_id)
    try:
        await resp.write(_sse_frame("connected", {"batchId": batch_id}))

        try:
            status = await store.read(batch_id)
        except StatusStoreError as e:
            logger.warning(f"Status lookup failed for stream {batch_id}: {e}")
            status = None
        status = status or hub.last_status(batch_id)

        if status:
            await resp.write(_sse_frame("status", status))
            if is_terminal(status):
                return resp
        else:
            await resp.write(_sse_frame("status", {"batchId": batch_id, "status": "queued"}))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                await resp.write(_sse_frame("timeout", {"batchId": batch_id}))
                break
            try:
                status = await asyncio.wait_for(queue.get(), timeout=min(heartbeat, remaining))
            except asyncio.TimeoutError:
                await resp.write(b": keep-alive\n\n")
                continue
            await resp.write(_sse_frame("status", status))
            if is_terminal(status):
                break
    except ConnectionResetError:
        logger.debug(f"Stream client for batch {batch_id} disconnected")
    finally:
        hub.unsubscribe(batch_id, queue)
    return resp
