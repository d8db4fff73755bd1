#!/usr/bin/env python3
"""
Metadata enrichment for reconciled entries.

Looks up interaction counts (per entry guid) and post metadata (per feed URL)
from the auxiliary metadata service in two batched calls. Both lookups are
retried under a RetryPolicy and bounded by a deadline; whatever is missing
afterwards is filled in from the entry and its feed, so enrichment can slow
delivery down by at most the deadline and never prevents it.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import EnrichmentError
from models import DisplayEntry, Entry
from telemetry import trace_span
from utils import RetryPolicy, TTLCache

logger = get_logger("enrichment")

INTERACTIONS_PATH = "/interactions/batch"
POSTS_PATH = "/posts/by-feed-urls"


def default_counts() -> Dict[str, int]:
    return {"likes": 0, "comments": 0, "reposts": 0}


def fallback_metadata(entry: Entry) -> Dict[str, Any]:
    """Display metadata derived from the entry and its feed alone."""
    return {
        "title": entry.feed_title or entry.title,
        "featuredImg": entry.image or "",
        "mediaType": entry.media_type,
        "postSlug": "",
        "categorySlug": "",
        "verified": False,
    }


def _as_count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


class MetadataEnricher:
    """Attach interaction counts and post metadata to entries.

    The cache is injected by the owner of the process context (the consumer)
    and only holds post metadata; interaction counts change too often to be
    worth caching.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        session: Optional[ClientSession] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.METADATA_SERVICE_URL) or None
        self.cache = cache if cache is not None else TTLCache(config.METADATA_CACHE_SIZE, config.METADATA_CACHE_TTL)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.ENRICHMENT_MAX_ATTEMPTS,
            base_delay=config.RETRY_DELAY_BASE,
            max_delay=config.RETRY_MAX_DELAY,
            retry_on=(ClientError, asyncio.TimeoutError, EnrichmentError),
        )
        self.timeout = timeout or config.ENRICHMENT_TIMEOUT
        attempt_timeout = max(self.timeout / self.retry_policy.max_attempts, 0.5)
        self._attempt_timeout = ClientTimeout(total=attempt_timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={"User-Agent": config.USER_AGENT})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        session = await self._get_session()
        async with session.post(f"{self.base_url}{path}", json=payload, timeout=self._attempt_timeout) as resp:
            if resp.status >= 400:
                raise EnrichmentError(f"Metadata service returned HTTP {resp.status} for {path}")
            return await resp.json(content_type=None)

    async def _with_deadline(self, path: str, payload: Dict[str, Any]) -> Any:
        return await asyncio.wait_for(
            self.retry_policy.run(self._post_json, path, payload, description=f"metadata lookup {path}"),
            timeout=self.timeout,
        )

    async def fetch_interaction_counts(self, guids: List[str]) -> Dict[str, Dict[str, int]]:
        data = await self._with_deadline(INTERACTIONS_PATH, {"guids": guids})
        counts: Dict[str, Dict[str, int]] = {}
        for item in (data or {}).get("items", []) if isinstance(data, dict) else []:
            if isinstance(item, dict) and item.get("guid"):
                counts[str(item["guid"])] = {
                    "likes": _as_count(item.get("likes")),
                    "comments": _as_count(item.get("comments")),
                    "reposts": _as_count(item.get("reposts")),
                }
        return counts

    async def fetch_post_metadata(self, feed_urls: List[str]) -> Dict[str, Dict[str, Any]]:
        found: Dict[str, Dict[str, Any]] = {}
        pending = []
        for url in feed_urls:
            cached = self.cache.get(url)
            if cached is not None:
                found[url] = cached
            else:
                pending.append(url)
        if not pending:
            return found

        data = await self._with_deadline(POSTS_PATH, {"feedUrls": pending})
        for post in (data or {}).get("posts", []) if isinstance(data, dict) else []:
            if not isinstance(post, dict) or not post.get("feedUrl"):
                continue
            metadata = {
                "title": post.get("title"),
                "featuredImg": post.get("featuredImg") or "",
                "mediaType": post.get("mediaType"),
                "postSlug": post.get("postSlug") or "",
                "categorySlug": post.get("categorySlug") or "",
                "verified": bool(post.get("verified")),
            }
            found[post["feedUrl"]] = metadata
            self.cache.set(post["feedUrl"], metadata)
        return found

    async def _lookup(self, entries: List[Entry]) -> Tuple[Dict[str, Dict[str, int]], Dict[str, Dict[str, Any]]]:
        guids = list(dict.fromkeys(e.guid for e in entries))
        feed_urls = list(dict.fromkeys(e.feed_url for e in entries if e.feed_url))
        counts_result, posts_result = await asyncio.gather(
            self.fetch_interaction_counts(guids),
            self.fetch_post_metadata(feed_urls),
            return_exceptions=True,
        )
        if isinstance(counts_result, BaseException):
            logger.warning(f"Interaction lookup failed, using zero counts: {counts_result!r}")
            counts_result = {}
        if isinstance(posts_result, BaseException):
            logger.warning(f"Post metadata lookup failed, using feed defaults: {posts_result!r}")
            posts_result = {}
        return counts_result, posts_result

    @staticmethod
    def _display(entry: Entry, counts: Dict[str, Dict[str, int]], posts: Dict[str, Dict[str, Any]]) -> DisplayEntry:
        metadata = fallback_metadata(entry)
        post = posts.get(entry.feed_url or "")
        if post:
            metadata.update({k: v for k, v in post.items() if v not in (None, "")})
        return DisplayEntry(
            entry=entry,
            interaction_counts=dict(counts.get(entry.guid) or default_counts()),
            post_metadata=metadata,
        )

    @trace_span("enrichment.enrich", tracer_name="enrichment",
                attr_from_args=lambda self, entries: {"entry.count": len(entries)})
    async def enrich(self, entries: List[Entry]) -> List[DisplayEntry]:
        """Return display entries in the same order as ``entries``."""
        if not entries:
            return []
        counts: Dict[str, Dict[str, int]] = {}
        posts: Dict[str, Dict[str, Any]] = {}
        if self.base_url:
            counts, posts = await self._lookup(entries)
        return [self._display(entry, counts, posts) for entry in entries]
