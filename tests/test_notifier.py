import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from notifier import HttpNotifier, HubNotifier, Notifier
from realtime import BatchStatusHub


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


COMPLETED = {"batchId": "b1", "status": "completed"}


@pytest.mark.asyncio
async def test_hub_notifier_reaches_live_subscribers():
    hub = BatchStatusHub(retain_seconds=60)
    queue = hub.subscribe("b1")
    other = hub.subscribe("b2")
    notifier = HubNotifier(hub)

    notifier.notify("b1", COMPLETED)
    await notifier.aclose()

    assert queue.get_nowait() == COMPLETED
    assert other.empty()
    assert notifier.pending == 0


@pytest.mark.asyncio
async def test_notify_swallows_dispatch_failures():
    class Exploding(Notifier):
        async def _dispatch(self, batch_id, status):
            raise RuntimeError("push channel down")

    notifier = Exploding()

    notifier.notify("b1", COMPLETED)
    await notifier.aclose()

    assert notifier.pending == 0


@pytest.mark.asyncio
async def test_aclose_cancels_stuck_notifications():
    class Stuck(Notifier):
        async def _dispatch(self, batch_id, status):
            await asyncio.sleep(30)

    notifier = Stuck()
    notifier.notify("b1", COMPLETED)

    await notifier.aclose(timeout=0.05)

    assert notifier.pending == 0


@pytest.mark.asyncio
async def test_http_notifier_posts_to_batch_url():
    received = []

    async def handler(request):
        received.append((request.match_info["batchId"], await request.json()))
        return web.json_response({"delivered": 1}, status=202)

    app = web.Application()
    app.router.add_post("/api/batch-status/{batchId}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        template = str(server.make_url("/api/batch-status/")) + "{batch_id}"
        notifier = HttpNotifier(url_template=template, timeout=2)

        notifier.notify("b 1", {"batchId": "b 1", "status": "failed"})
        await notifier.aclose()

        assert notifier.url_for("b 1").endswith("/api/batch-status/b%201")
        assert received == [("b 1", {"batchId": "b 1", "status": "failed"})]
    finally:
        await server.close()


def test_hub_retains_last_status_for_late_subscribers():
    clock = FakeClock()
    hub = BatchStatusHub(retain_seconds=10, clock=clock)

    assert hub.publish("b1", COMPLETED) == 0
    clock.now = 9
    assert hub.last_status("b1") == COMPLETED
    clock.now = 10
    assert hub.last_status("b1") is None


def test_hub_unsubscribe_forgets_empty_channels():
    hub = BatchStatusHub(retain_seconds=10)
    queue = hub.subscribe("b1")
    assert hub.subscriber_count("b1") == 1

    hub.unsubscribe("b1", queue)

    assert hub.subscriber_count("b1") == 0
    assert hub.publish("b1", COMPLETED) == 0
