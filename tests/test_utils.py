import asyncio

import pytest

from utils import BackgroundTaskPool, RateLimiter, RetryHelper, format_duration, strip_code_fences, truncate_content


@pytest.mark.asyncio
async def test_background_pool_caps_concurrency_and_logs_failures():
    pool = BackgroundTaskPool(limit=2, name="test")
    running = 0
    peak = 0

    async def work(fail=False):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        if fail:
            raise RuntimeError("boom")

    for i in range(6):
        pool.submit(work(fail=i == 3), label=str(i))
    await pool.drain()

    assert peak == 2
    assert pool.failures == 1
    assert len(pool) == 0


@pytest.mark.asyncio
async def test_rate_limiter_zero_interval_never_waits():
    limiter = RateLimiter(0)
    loop = asyncio.get_running_loop()
    started = loop.time()
    for _ in range(20):
        await limiter.acquire()
    assert loop.time() - started < 0.05


def test_retry_delays_double_up_to_cap():
    helper = RetryHelper(base_delay=2.0, max_delay=10.0)
    assert [helper.calculate_delay(a) for a in range(4)] == [2.0, 4.0, 8.0, 10.0]


def test_text_helpers():
    assert truncate_content("abcdef", 3) == "abc..."
    assert truncate_content("abc", 3) == "abc"
    assert strip_code_fences("```json\n{\"a\": 1}\n```") == '{"a": 1}'
    assert strip_code_fences("plain") == "plain"
    assert format_duration(3723) == "1h 2m 3s"
    assert format_duration(0) == "0s"
