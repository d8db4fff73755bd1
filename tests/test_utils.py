from random import Random

import pytest

from utils import RetryPolicy, TTLCache, ms_to_iso, parse_timestamp_ms


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_retry_delay_is_exponential_and_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0, jitter=0.0)

    assert [policy.calculate_delay(a) for a in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_retry_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=1.0, max_delay=4.0, jitter=0.5, rng=Random(7))

    for attempt in range(6):
        delay = policy.calculate_delay(attempt)
        ceiling = min(2 ** attempt, 4.0)
        assert ceiling * 0.5 <= delay <= ceiling


@pytest.mark.asyncio
async def test_retry_run_succeeds_after_transient_failures():
    policy = RetryPolicy(max_attempts=3, base_delay=0, retry_on=(ConnectionError,))
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("boom")
        return "ok"

    assert await policy.run(flaky) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_run_gives_up_and_reraises():
    policy = RetryPolicy(max_attempts=2, base_delay=0, retry_on=(ConnectionError,))
    calls = []

    async def broken():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await policy.run(broken)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_run_does_not_retry_other_errors():
    policy = RetryPolicy(max_attempts=3, base_delay=0, retry_on=(ConnectionError,))
    calls = []

    async def bad_input():
        calls.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await policy.run(bad_input)
    assert len(calls) == 1


def test_ttl_cache_expires_entries_lazily():
    clock = FakeClock()
    cache = TTLCache(max_size=10, ttl=5, clock=clock)
    cache.set("a", 1)

    clock.now = 4.9
    assert cache.get("a") == 1
    clock.now = 5.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_ttl_cache_trims_oldest_when_full():
    clock = FakeClock()
    cache = TTLCache(max_size=2, ttl=60, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_ttl_cache_drops_expired_before_trimming():
    clock = FakeClock()
    cache = TTLCache(max_size=2, ttl=10, clock=clock)
    cache.set("old", 1)
    clock.now = 5
    cache.set("young", 2)
    clock.now = 11
    cache.set("new", 3)

    assert len(cache) == 2
    assert cache.get("young") == 2
    assert cache.get("new") == 3


def test_parse_timestamp_accepts_common_formats():
    assert parse_timestamp_ms(1_700_000_000_000) == 1_700_000_000_000
    assert parse_timestamp_ms("1700000000000") == 1_700_000_000_000
    assert parse_timestamp_ms("2024-01-01T00:00:00Z") == 1_704_067_200_000
    assert parse_timestamp_ms("2024-01-01T00:00:00") == 1_704_067_200_000
    assert parse_timestamp_ms("Mon, 01 Jan 2024 00:00:00 GMT") == 1_704_067_200_000


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp_ms(None) is None
    assert parse_timestamp_ms("") is None
    assert parse_timestamp_ms("not a date") is None
    assert parse_timestamp_ms(True) is None
    assert parse_timestamp_ms(float("nan")) is None


def test_ms_to_iso_uses_utc_z_suffix():
    assert ms_to_iso(1_704_067_200_000) == "2024-01-01T00:00:00.000Z"


def test_parse_timestamp_rejects_out_of_range_values():
    assert parse_timestamp_ms("9" * 5000) is None
    assert parse_timestamp_ms("1 Jan 99999999999999999999 00:00:00 +0000") is None
    assert parse_timestamp_ms("9999-12-31T23:59:59+00:00") == 253_402_300_799_000
