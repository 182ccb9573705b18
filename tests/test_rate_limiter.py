import asyncio

import pytest

from core.exceptions import RateLimiterClosedError
from core.rate_limiter import RateLimiter, RequestPriority
from core.usage import TokenUsage


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_limiter(clock: FakeClock, requests: int = 2, tokens: int = 1000) -> RateLimiter:
    return RateLimiter(
        limits={"m": {"requests_per_window": requests, "tokens_per_window": tokens}},
        window_seconds=60,
        poll_interval=0.005,
        default_limit=None,
        pricing={"m": {"input": 1.0, "output": 2.0}},
        clock=clock,
    )


@pytest.mark.asyncio
async def test_unbudgeted_model_is_admitted_immediately():
    limiter = RateLimiter(limits={}, default_limit=None)
    permit = await limiter.request_permission("anything", 10**9)
    assert permit.event is None
    assert limiter.get_status("anything").requests_per_window is None


@pytest.mark.asyncio
async def test_request_waits_until_window_rolls():
    clock = FakeClock()
    limiter = make_limiter(clock)
    await limiter.request_permission("m", 100)
    await limiter.request_permission("m", 100)

    waiter = asyncio.create_task(limiter.request_permission("m", 100))
    await asyncio.sleep(0.03)
    assert not waiter.done()
    assert limiter.get_status("m").queue_length == 1

    clock.now += 61
    permit = await asyncio.wait_for(waiter, timeout=1)
    assert permit.estimated_tokens == 100
    assert limiter.get_status("m").requests_in_window == 1


@pytest.mark.asyncio
async def test_higher_priority_is_admitted_first():
    clock = FakeClock()
    limiter = make_limiter(clock, requests=1)
    await limiter.request_permission("m", 10)

    order: list[str] = []

    async def request(name: str, priority: RequestPriority) -> None:
        await limiter.request_permission("m", 10, priority)
        order.append(name)

    low = asyncio.create_task(request("low", RequestPriority.LOW))
    await asyncio.sleep(0.01)
    high = asyncio.create_task(request("high", RequestPriority.HIGH))
    await asyncio.sleep(0.01)

    clock.now += 61
    await asyncio.sleep(0.03)
    assert order == ["high"]

    clock.now += 61
    await asyncio.wait_for(asyncio.gather(low, high), timeout=1)
    assert order == ["high", "low"]


@pytest.mark.asyncio
async def test_large_head_request_blocks_smaller_ones_behind_it():
    clock = FakeClock()
    limiter = make_limiter(clock, requests=10, tokens=1000)
    await limiter.request_permission("m", 600)

    big = asyncio.create_task(limiter.request_permission("m", 800))
    await asyncio.sleep(0.01)
    small = asyncio.create_task(limiter.request_permission("m", 10))
    await asyncio.sleep(0.03)
    assert not big.done()
    assert not small.done()

    clock.now += 61
    await asyncio.wait_for(asyncio.gather(big, small), timeout=1)


@pytest.mark.asyncio
async def test_oversized_request_admitted_once_window_is_empty():
    clock = FakeClock()
    limiter = make_limiter(clock, tokens=1000)
    permit = await limiter.request_permission("m", 5000)
    assert permit.estimated_tokens == 5000
    assert limiter.get_status("m").tokens_in_window == 5000


@pytest.mark.asyncio
async def test_record_usage_replaces_estimate():
    clock = FakeClock()
    limiter = make_limiter(clock)
    permit = await limiter.request_permission("m", 500)
    limiter.record_usage(
        "m", TokenUsage(prompt_tokens=40, completion_tokens=60, total_tokens=100), permit
    )
    status = limiter.get_status("m")
    assert status.tokens_in_window == 100
    assert status.requests_in_window == 1

    stats = limiter.usage_stats()["m"]
    assert stats["requests"] == 1
    assert stats["total_tokens"] == 100
    assert limiter.total_cost() == pytest.approx(40 / 1000 * 1.0 + 60 / 1000 * 2.0)


@pytest.mark.asyncio
async def test_clear_queue_rejects_waiters():
    clock = FakeClock()
    limiter = make_limiter(clock, requests=1)
    await limiter.request_permission("m", 10)
    waiter = asyncio.create_task(limiter.request_permission("m", 10))
    await asyncio.sleep(0.01)

    assert limiter.clear_queue("m") == 1
    with pytest.raises(RateLimiterClosedError):
        await asyncio.wait_for(waiter, timeout=1)
    assert limiter.get_status("m").queue_length == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    clock = FakeClock()
    limiter = make_limiter(clock, requests=1)
    await limiter.request_permission("m", 10)
    waiter = asyncio.create_task(limiter.request_permission("m", 10))
    await asyncio.sleep(0.01)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert limiter.get_status("m").queue_length == 0


def test_estimate_request_tokens_adds_output_and_buffer():
    limiter = RateLimiter(limits={}, default_limit=None)
    assert limiter.estimate_tokens("") == 0
    assert limiter.estimate_tokens("abcdefgh") == 2
    assert limiter.estimate_request_tokens("abcdefgh", 50) == 2 + 50 + 100
