#!/usr/bin/env python3
"""
Best-effort real-time notification of batch outcomes.

notify() never blocks and never raises: the dispatch runs as a background
task whose failures are logged and dropped. The status store stays the
source of truth; a lost notification only means a subscriber falls back to
polling.
"""

import asyncio
from typing import Any, Dict, Optional, Set
from urllib.parse import quote

from aiohttp import ClientSession, ClientTimeout

from config import config, get_logger
from realtime import BatchStatusHub

logger = get_logger("notifier")


class Notifier:
    """Fire-and-forget event sink for batch status records."""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def notify(self, batch_id: str, status: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping notification for batch {batch_id}")
            return
        task = loop.create_task(self._dispatch_safely(batch_id, status))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch_safely(self, batch_id: str, status: Dict[str, Any]) -> None:
        try:
            await self._dispatch(batch_id, status)
        except Exception as e:
            logger.warning(f"Notification for batch {batch_id} failed: {e!r}")

    async def _dispatch(self, batch_id: str, status: Dict[str, Any]) -> None:
        raise NotImplementedError

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Give in-flight notifications a moment to finish, then cancel the rest."""
        if not self._pending:
            return
        _, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.info(f"Cancelled {len(not_done)} pending notifications on shutdown")


class HubNotifier(Notifier):
    """Publish into the in-process BatchStatusHub."""

    def __init__(self, hub: BatchStatusHub):
        super().__init__()
        self.hub = hub

    async def _dispatch(self, batch_id: str, status: Dict[str, Any]) -> None:
        delivered = self.hub.publish(batch_id, status)
        logger.debug(f"Batch {batch_id} status pushed to {delivered} subscribers")


class HttpNotifier(Notifier):
    """POST the status to a per-batch URL built from a template."""

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[ClientSession] = None):
        super().__init__()
        self.url_template = url_template or config.NOTIFY_URL_TEMPLATE
        self.timeout = ClientTimeout(total=timeout or config.NOTIFY_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    def url_for(self, batch_id: str) -> str:
        return self.url_template.format(batch_id=quote(batch_id, safe=""))

    async def _dispatch(self, batch_id: str, status: Dict[str, Any]) -> None:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={"User-Agent": config.USER_AGENT})
            self._owns_session = True
        async with self._session.post(self.url_for(batch_id), json=status, timeout=self.timeout) as resp:
            if resp.status >= 400:
                logger.warning(f"Notification endpoint answered HTTP {resp.status} for batch {batch_id}")

    async def aclose(self, timeout: float = 5.0) -> None:
        await super().aclose(timeout)
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


def create_notifier(hub: BatchStatusHub) -> Notifier:
    if config.NOTIFY_URL_TEMPLATE:
        return HttpNotifier()
    return HubNotifier(hub)
