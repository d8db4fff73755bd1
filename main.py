#!/usr/bin/env python3
"""
Feed refresher command line entry point.

Modes:
  serve            run the HTTP service (queue consumer endpoint, status lookup, SSE)
  consume FILE     run a queue payload (envelope or direct batch request) from a JSON file
  status           print store statistics and the active configuration
  show BATCH_ID    print the stored status record of a batch
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from config import config, get_logger
from consumer import QueueConsumer
from errors import InvalidPayloadError, StatusStoreError
from messages import decode_payload, normalize_payload
from models import DatabaseQueue
from notifier import create_notifier
from realtime import BatchStatusHub
from status_store import create_status_store
from telemetry import init_telemetry
from utils import format_duration, now_ms

# Module-specific logger
logger = get_logger("main")


class RefresherRunner:
    """Runs one-shot refresher tasks outside the web server."""

    def __init__(self, database_path: Optional[str] = None) -> None:
        self.database_path = database_path or config.DATABASE_PATH

    async def run_consume(self, payload: Any, worker_signal: bool = False) -> Optional[Dict[str, Any]]:
        """Process a payload through the queue consumer and return its report."""
        logger.info("📡 Running queue consumer on payload")
        try:
            bodies = normalize_payload(decode_payload(payload))
        except InvalidPayloadError as e:
            logger.error(f"❌ {e}")
            return None

        db = DatabaseQueue(self.database_path)
        status_store = create_status_store()
        hub = BatchStatusHub()
        notifier = create_notifier(hub)
        consumer = QueueConsumer(db, status_store, notifier)
        await db.start()
        try:
            report = await consumer.process_batch(bodies, worker_signal=worker_signal)
            return report.to_dict()
        finally:
            await consumer.close()
            await notifier.aclose()
            await status_store.close()
            await db.stop()

    async def check_status(self) -> Dict[str, Any]:
        """Collect feed and entry statistics from the store."""
        db = DatabaseQueue(self.database_path)
        await db.start()
        try:
            feeds = await db.execute('list_feeds')
            entry_count = await db.execute('count_entries')
        finally:
            await db.stop()

        now = now_ms()
        stale_cutoff = now - int(config.STALE_THRESHOLD_HOURS * 3600 * 1000)
        return {
            "feeds": feeds,
            "feed_count": len(feeds),
            "never_fetched": sum(1 for f in feeds if f["last_fetched"] is None),
            "stale": sum(1 for f in feeds if f["last_fetched"] is not None and f["last_fetched"] < stale_cutoff),
            "entry_count": entry_count,
            "now": now,
            "config": config.get_config_summary(),
        }

    def print_status(self, status: Dict[str, Any]) -> None:
        print("📊 Feed refresher status")
        print(f"   Feeds: {status['feed_count']} ({status['stale']} stale, {status['never_fetched']} never fetched)")
        print(f"   Entries: {status['entry_count']}")
        for feed in status["feeds"]:
            if feed["last_fetched"] is None:
                age = "never"
            else:
                age = format_duration((status["now"] - feed["last_fetched"]) / 1000) + " ago"
            print(f"   - {feed['title']}: {feed['entry_count']} entries, fetched {age}")
        print("⚙️  Configuration")
        for key, value in status["config"].items():
            print(f"   {key}: {value}")

    async def show_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        """Read a batch status record; only meaningful with a shared backend."""
        if config.STATUS_BACKEND == "memory":
            logger.warning(
                "⚠️ STATUS_BACKEND=memory keeps records inside the serving process; "
                "set STATUS_BACKEND=redis to look batches up from the CLI"
            )
        status_store = create_status_store()
        try:
            return await status_store.read(batch_id)
        finally:
            await status_store.close()


def _load_payload(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r") as f:
        return json.load(f)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed refresh pipeline')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP service')
    serve.add_argument('--host', type=str, help='Bind address (default from HTTP_HOST)')
    serve.add_argument('--port', type=int, help='Port (default from HTTP_PORT)')

    consume = subparsers.add_parser('consume', help='Process a queue payload from a JSON file ("-" for stdin)')
    consume.add_argument('file', type=str)
    consume.add_argument('--worker-result', action='store_true',
                         help='Treat the payload as already refreshed by the fetch worker')

    subparsers.add_parser('status', help='Show store statistics and configuration')

    show = subparsers.add_parser('show', help='Show the stored status of a batch')
    show.add_argument('batch_id', type=str)

    parser.add_argument('--database', type=str, help='SQLite database path (default from DATABASE_PATH)')

    args = parser.parse_args()
    runner = RefresherRunner(args.database)

    try:
        if args.mode == 'serve':
            from server import run_server
            run_server(args.host, args.port)
        elif args.mode == 'consume':
            init_telemetry("feed-refresher-cli")
            try:
                payload = _load_payload(args.file)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"❌ Could not read payload {args.file}: {e}")
                sys.exit(2)
            report = asyncio.run(runner.run_consume(payload, worker_signal=args.worker_result))
            if report is None:
                sys.exit(2)
            print(json.dumps(report, indent=2))
            sys.exit(0 if report["failed"] == 0 else 1)
        elif args.mode == 'status':
            runner.print_status(asyncio.run(runner.check_status()))
        elif args.mode == 'show':
            try:
                record = asyncio.run(runner.show_batch(args.batch_id))
            except StatusStoreError as e:
                logger.error(f"❌ {e}")
                sys.exit(1)
            if record is None:
                print(f"Batch {args.batch_id}: unknown or expired")
                sys.exit(1)
            print(json.dumps(record, indent=2))
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
