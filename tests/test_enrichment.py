import asyncio

import pytest
from aiohttp import ClientError, web
from aiohttp.test_utils import TestServer

from enrichment import INTERACTIONS_PATH, POSTS_PATH, MetadataEnricher
from errors import EnrichmentError
from utils import RetryPolicy, TTLCache

from helpers import make_entry

FAST_RETRY = RetryPolicy(max_attempts=2, base_delay=0, retry_on=(ClientError, asyncio.TimeoutError, EnrichmentError))


def _metadata_app(calls, status=200, delay=0):
    async def interactions(request):
        calls.append(INTERACTIONS_PATH)
        if delay:
            await asyncio.sleep(delay)
        if status >= 400:
            return web.json_response({"error": "down"}, status=status)
        body = await request.json()
        return web.json_response({"items": [
            {"guid": guid, "likes": 3, "comments": 1, "reposts": "2"} for guid in body["guids"]
        ]})

    async def posts(request):
        calls.append(POSTS_PATH)
        if status >= 400:
            return web.json_response({"error": "down"}, status=status)
        body = await request.json()
        return web.json_response({"posts": [
            {"feedUrl": url, "title": "Tech Weekly Show", "featuredImg": "https://img.example/t.png",
             "postSlug": "tech-weekly", "categorySlug": "technology", "verified": True}
            for url in body["feedUrls"]
        ]})

    app = web.Application()
    app.router.add_post(INTERACTIONS_PATH, interactions)
    app.router.add_post(POSTS_PATH, posts)
    return app


async def _start(app):
    server = TestServer(app)
    await server.start_server()
    return server, str(server.make_url("")).rstrip("/")


@pytest.mark.asyncio
async def test_enrich_merges_counts_and_metadata_and_caches_posts():
    calls = []
    server, base_url = await _start(_metadata_app(calls))
    enricher = MetadataEnricher(base_url=base_url, cache=TTLCache(10, 60), retry_policy=FAST_RETRY, timeout=5)
    try:
        entries = [make_entry(2, "g2", pub_date=2000), make_entry(1, "g1", pub_date=1000)]

        display = await enricher.enrich(entries)
        await enricher.enrich(entries)

        assert [d.entry.guid for d in display] == ["g2", "g1"]
        assert display[0].interaction_counts == {"likes": 3, "comments": 1, "reposts": 2}
        assert display[0].post_metadata["title"] == "Tech Weekly Show"
        assert display[0].post_metadata["postSlug"] == "tech-weekly"
        assert display[0].post_metadata["verified"] is True
        assert calls.count(INTERACTIONS_PATH) == 2
        assert calls.count(POSTS_PATH) == 1
    finally:
        await enricher.close()
        await server.close()


@pytest.mark.asyncio
async def test_service_errors_fall_back_after_retries():
    calls = []
    server, base_url = await _start(_metadata_app(calls, status=500))
    enricher = MetadataEnricher(base_url=base_url, cache=TTLCache(10, 60), retry_policy=FAST_RETRY, timeout=5)
    try:
        display = await enricher.enrich([make_entry(1, "g1", pub_date=1000)])

        assert display[0].interaction_counts == {"likes": 0, "comments": 0, "reposts": 0}
        assert display[0].post_metadata["title"] == "Tech Weekly"
        assert display[0].post_metadata["verified"] is False
        assert calls.count(INTERACTIONS_PATH) == 2
        assert calls.count(POSTS_PATH) == 2
    finally:
        await enricher.close()
        await server.close()


@pytest.mark.asyncio
async def test_slow_service_is_cut_off_at_the_deadline():
    calls = []
    server, base_url = await _start(_metadata_app(calls, delay=1.0))
    enricher = MetadataEnricher(base_url=base_url, cache=TTLCache(10, 60), retry_policy=FAST_RETRY, timeout=0.2)
    try:
        loop = asyncio.get_running_loop()
        started = loop.time()

        display = await enricher.enrich([make_entry(1, "g1", pub_date=1000)])

        assert loop.time() - started < 0.9
        assert display[0].interaction_counts == {"likes": 0, "comments": 0, "reposts": 0}
        # Posts answer immediately, so metadata still arrives
        assert display[0].post_metadata["title"] == "Tech Weekly Show"
    finally:
        await enricher.close()
        await server.close()


@pytest.mark.asyncio
async def test_without_service_url_entries_get_defaults():
    enricher = MetadataEnricher(base_url="")

    display = await enricher.enrich([make_entry(1, "g1", pub_date=1000)])

    assert display[0].interaction_counts == {"likes": 0, "comments": 0, "reposts": 0}
    assert display[0].post_metadata["title"] == "Tech Weekly"
    assert display[0].to_dict()["entry"]["guid"] == "g1"


@pytest.mark.asyncio
async def test_enrich_of_nothing_makes_no_calls():
    calls = []
    server, base_url = await _start(_metadata_app(calls))
    enricher = MetadataEnricher(base_url=base_url, retry_policy=FAST_RETRY)
    try:
        assert await enricher.enrich([]) == []
        assert calls == []
    finally:
        await enricher.close()
        await server.close()
