#!/usr/bin/env python3
"""
HTTP surface of the feed refresher (aiohttp.web).

Routes:
    POST /api/queue-consumer            queue envelope or direct batch request
    GET  /api/batch-status/{batchId}    status lookup (404 = unknown/expired)
    POST /api/batch-status/{batchId}    push a status to the batch's subscribers
    GET  /api/batch-stream/{batchId}    Server-Sent Events for one batch
    POST /api/feeds/check-stale         which of the named feeds need a refresh
    GET  /health                        liveness and dependency checks
"""

import json
from typing import Optional

from aiohttp import web

from config import config, get_logger
from consumer import QueueConsumer
from errors import InvalidPayloadError, StatusStoreError
from messages import INVALID_PAYLOAD_MESSAGE, decode_payload, normalize_payload
from models import DatabaseQueue
from notifier import Notifier, create_notifier
from realtime import HUB_KEY, STATUS_STORE_KEY, BatchStatusHub, stream_batch_status
from status_store import BatchStatusStore, create_status_store
from telemetry import init_telemetry

logger = get_logger("server")

DB_KEY = web.AppKey("db", DatabaseQueue)
CONSUMER_KEY = web.AppKey("consumer", QueueConsumer)
NOTIFIER_KEY = web.AppKey("notifier", Notifier)

WORKER_RESULT_HEADER = "X-Worker-Result"


def _bad_request(message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=400)


async def queue_consumer(request: web.Request) -> web.Response:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request(INVALID_PAYLOAD_MESSAGE)

    try:
        bodies = normalize_payload(decode_payload(payload))
    except InvalidPayloadError as e:
        logger.warning(f"Rejected queue payload: {e}")
        return _bad_request(str(e))

    worker_signal = request.headers.get(WORKER_RESULT_HEADER, "").strip().lower() == "true"
    try:
        report = await request.app[CONSUMER_KEY].process_batch(bodies, worker_signal=worker_signal)
    except Exception as e:
        logger.error(f"❌ Queue consumer crashed: {e}")
        return web.json_response({"success": False, "error": "Queue processing failed"}, status=500)
    return web.json_response(report.to_dict())


async def get_batch_status(request: web.Request) -> web.Response:
    batch_id = request.match_info["batchId"]
    try:
        status = await request.app[STATUS_STORE_KEY].read(batch_id)
    except StatusStoreError as e:
        logger.error(f"Status lookup failed for {batch_id}: {e}")
        return web.json_response({"batchId": batch_id, "error": "Status store unavailable"}, status=503)
    if status is None:
        return web.json_response({"batchId": batch_id, "status": "unknown"}, status=404)
    return web.json_response(status)


async def publish_batch_status(request: web.Request) -> web.Response:
    batch_id = request.match_info["batchId"]
    try:
        status = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Status body must be JSON")
    if not isinstance(status, dict) or not status.get("status"):
        return _bad_request("Status body must be an object with a status field")
    delivered = request.app[HUB_KEY].publish(batch_id, status)
    return web.json_response({"batchId": batch_id, "delivered": delivered}, status=202)


async def check_stale(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    titles = body.get("postTitles") if isinstance(body, dict) else None
    if not isinstance(titles, list) or not all(isinstance(t, str) for t in titles):
        return web.json_response({"success": False, "error": "Invalid postTitles array"}, status=400)

    titles = list(dict.fromkeys(t.strip() for t in titles if t.strip()))
    report = await request.app[CONSUMER_KEY].detector.detect(titles)
    logger.info(f"🔍 Stale check: {len(report.stale)} stale, {len(report.missing)} unknown of {len(titles)} feeds")
    return web.json_response({
        "success": True,
        "staleFeedTitles": sorted(report.stale),
        "missingFeedTitles": sorted(report.missing),
        "totalChecked": len(titles),
        "staleCount": len(report.stale),
    })


async def health(request: web.Request) -> web.Response:
    try:
        await request.app[DB_KEY].execute('count_entries')
        database_ok = True
    except Exception as e:
        logger.warning(f"Health check: database unavailable: {e}")
        database_ok = False
    store_ok = await request.app[STATUS_STORE_KEY].ping()
    healthy = database_ok and store_ok
    return web.json_response(
        {"status": "ok" if healthy else "degraded", "database": database_ok, "statusStore": store_ok},
        status=200 if healthy else 503,
    )


async def _lifecycle(app: web.Application):
    db = app[DB_KEY]
    if not db.running:
        await db.start()
    logger.info(f"🚀 Feed refresher ready ({config.DELEGATION_MODE} delegation, {config.STATUS_BACKEND} status store)")
    yield
    await app[CONSUMER_KEY].close()
    await app[NOTIFIER_KEY].aclose()
    await app[STATUS_STORE_KEY].close()
    await db.stop()


def create_app(
    db: Optional[DatabaseQueue] = None,
    status_store: Optional[BatchStatusStore] = None,
    hub: Optional[BatchStatusHub] = None,
    notifier: Optional[Notifier] = None,
    consumer: Optional[QueueConsumer] = None,
) -> web.Application:
    """Build the web application, wiring defaults from configuration."""
    db = db or DatabaseQueue(config.DATABASE_PATH)
    status_store = status_store or create_status_store()
    hub = hub or BatchStatusHub()
    notifier = notifier or create_notifier(hub)
    consumer = consumer or QueueConsumer(db, status_store, notifier)

    app = web.Application()
    app[DB_KEY] = db
    app[STATUS_STORE_KEY] = status_store
    app[HUB_KEY] = hub
    app[NOTIFIER_KEY] = notifier
    app[CONSUMER_KEY] = consumer
    app.cleanup_ctx.append(_lifecycle)

    app.router.add_post("/api/queue-consumer", queue_consumer)
    app.router.add_get("/api/batch-status/{batchId}", get_batch_status)
    app.router.add_post("/api/batch-status/{batchId}", publish_batch_status)
    app.router.add_get("/api/batch-stream/{batchId}", stream_batch_status)
    app.router.add_post("/api/feeds/check-stale", check_stale)
    app.router.add_get("/health", health)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    init_telemetry("feed-refresher-api")
    web.run_app(create_app(), host=host or config.HTTP_HOST, port=port or config.HTTP_PORT)
