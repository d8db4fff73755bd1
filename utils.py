#!/usr/bin/env python3
"""
Utility classes and functions for the refresh pipeline.

This module contains shared utilities used by the delegate, enrichment and
reconciliation components: the retry policy, the bounded TTL cache and
timestamp helpers.
"""

from asyncio import sleep
from collections import OrderedDict
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from random import Random
from time import monotonic, time
from typing import Any, Awaitable, Callable, Hashable, Optional, Tuple, Type

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RetryPolicy:
    """Bounded exponential backoff with jitter, reusable across call sites.

    Each call site builds its own policy (attempt count and delays differ
    between, say, metadata lookups and worker delegation) and runs its
    operation through :meth:`run`.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        jitter: float = 0.25,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        rng: Optional[Random] = None,
    ):
        """Initialize the retry policy.

        Args:
            max_attempts: Total number of attempts, including the first one
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between attempts
            jitter: Fraction of the computed delay that is randomized (0..1)
            retry_on: Exception types that trigger another attempt
            rng: Optional random generator (tests pass a seeded one)
        """
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(0.0, float(max_delay))
        self.jitter = min(max(float(jitter), 0.0), 1.0)
        self.retry_on = retry_on
        self._rng = rng or Random()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: The attempt that just failed (0-based)

        Returns:
            Delay in seconds, never above ``max_delay``
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay -= delay * self.jitter * self._rng.random()
        return max(0.0, delay)

    async def run(self, operation: Callable[..., Awaitable[Any]], *args, description: str = "operation", **kwargs) -> Any:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        The last exception is re-raised when every attempt fails. Exceptions
        outside ``retry_on`` propagate immediately.
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation(*args, **kwargs)
            except self.retry_on as e:
                if attempt + 1 >= self.max_attempts:
                    logger.warning(f"{description} failed after {self.max_attempts} attempts: {e}")
                    raise
                delay = self.calculate_delay(attempt)
                logger.debug(f"{description} attempt {attempt + 1} failed ({e}); retrying in {delay:.2f}s")
                if delay > 0:
                    await sleep(delay)


class TTLCache:
    """Size- and age-bounded in-process cache.

    Eviction is lazy: expired entries are dropped when touched and the oldest
    entries are trimmed on insert once ``max_size`` is reached. There is no
    background sweep and no sharing between processes, so a cache miss must
    always be acceptable to callers.
    """

    def __init__(self, max_size: int = 500, ttl: float = 600.0, clock: Callable[[], float] = monotonic):
        self.max_size = max(1, int(max_size))
        self.ttl = float(ttl)
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable, default: Any = None) -> Any:
        item = self._data.get(key)
        if item is None:
            return default
        expires_at, value = item
        if expires_at <= self._clock():
            del self._data[key]
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        self._data.pop(key, None)
        self._evict_expired(now)
        while len(self._data) >= self.max_size:
            self._data.popitem(last=False)
        self._data[key] = (now + self.ttl, value)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
        for k in expired:
            del self._data[k]

    def clear(self) -> None:
        self._data.clear()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time() * 1000)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Parse a client- or feed-supplied timestamp into epoch milliseconds.

    Accepts epoch milliseconds (int/float or numeric strings), ISO 8601 strings
    (with or without a trailing ``Z``) and RFC 2822 dates. Naive datetimes are
    taken as UTC. Returns None for anything that cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return int(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            try:
                return int(text)
            except ValueError:
                # beyond the interpreter's int string conversion limit
                return None
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return int(dt.timestamp() * 1000)
    except (OverflowError, ValueError, OSError):
        return None


def ms_to_iso(value: int) -> str:
    """Format epoch milliseconds as an ISO 8601 UTC string with a Z suffix."""
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
