import pytest

from main import RefresherRunner
from models import DatabaseQueue
from utils import now_ms

from helpers import HOUR_MS, entry_rows, seed_feed


@pytest.mark.asyncio
async def test_run_consume_rejects_unrecognized_payload(tmp_path):
    runner = RefresherRunner(str(tmp_path / "cli.db"))

    assert await runner.run_consume({"foo": 1}) is None


@pytest.mark.asyncio
async def test_run_consume_reports_failure_without_worker(tmp_path, monkeypatch):
    from config import config
    monkeypatch.setattr(config, "WORKER_URL", None)
    monkeypatch.setattr(config, "DELEGATION_MODE", "inline")
    runner = RefresherRunner(str(tmp_path / "cli.db"))

    report = await runner.run_consume({
        "batchId": "cli-1",
        "feeds": [{"postTitle": "Tech Weekly", "feedUrl": "https://tech.example/feed"}],
    })

    assert report == {"success": True, "processed": 0, "failed": 1}


@pytest.mark.asyncio
async def test_check_status_counts_stale_and_unfetched_feeds(tmp_path):
    path = str(tmp_path / "cli.db")
    db = DatabaseQueue(path)
    await db.start()
    try:
        await seed_feed(db, "Tech Weekly", "https://tech.example/feed", last_fetched=now_ms() - 6 * HOUR_MS,
                        entries=entry_rows(["a", "b"], now_ms()))
        await seed_feed(db, "Daily Brief", "https://brief.example/feed", last_fetched=now_ms())
        await seed_feed(db, "Never Fetched", "https://never.example/feed")
    finally:
        await db.stop()

    status = await RefresherRunner(path).check_status()

    assert status["feed_count"] == 3
    assert status["stale"] == 1
    assert status["never_fetched"] == 1
    assert status["entry_count"] == 2
    assert status["config"]["delegation_mode"] in ("inline", "signal")


@pytest.mark.asyncio
async def test_show_warns_that_memory_backend_is_process_local(tmp_path, monkeypatch, caplog):
    from config import config
    monkeypatch.setattr(config, "STATUS_BACKEND", "memory")

    with caplog.at_level("WARNING", logger="FeedRefresher.main"):
        record = await RefresherRunner(str(tmp_path / "cli.db")).show_batch("b1")

    assert record is None
    assert "STATUS_BACKEND=redis" in caplog.text
