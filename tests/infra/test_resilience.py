"""
容错模块测试：指数退避、超时包装、重试装饰器
"""

import asyncio

import httpx
import pytest

from infra.resilience import (
    ExponentialBackoff,
    RetryConfig,
    get_retry_config,
    run_with_timeout,
    set_retry_config,
    with_retry,
)


@pytest.fixture
def fast_retries():
    original = get_retry_config()
    set_retry_config(RetryConfig(max_retries=2, base_delay=0, max_delay=0))
    yield
    set_retry_config(original)


class TestExponentialBackoff:

    def test_sequence_doubles_until_cap(self):
        backoff = ExponentialBackoff(initial=1, maximum=60)
        delays = [backoff.next_delay() for _ in range(8)]
        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_reset(self):
        backoff = ExponentialBackoff(initial=1, maximum=60)
        backoff.next_delay()
        backoff.next_delay()
        assert backoff.attempts == 2

        backoff.reset()

        assert backoff.attempts == 0
        assert backoff.peek() == 1

    @pytest.mark.parametrize(
        "kwargs",
        [{"initial": 0}, {"initial": 5, "maximum": 1}, {"factor": 0.5}],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ExponentialBackoff(**kwargs)


class TestRunWithTimeout:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 42

        assert await run_with_timeout(work(), 1, operation="work") == 42

    @pytest.mark.asyncio
    async def test_none_timeout_waits(self):
        async def work():
            await asyncio.sleep(0.01)
            return "done"

        assert await run_with_timeout(work(), None, operation="work") == "done"

    @pytest.mark.asyncio
    async def test_default_error(self):
        with pytest.raises(TimeoutError):
            await run_with_timeout(asyncio.sleep(1), 0.01, operation="sleep")

    @pytest.mark.asyncio
    async def test_error_factory(self):
        class Late(Exception):
            pass

        with pytest.raises(Late) as exc_info:
            await run_with_timeout(asyncio.sleep(1), 0.01, operation="reply", error_factory=Late)
        assert "reply timed out" in str(exc_info.value)


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_retries_transient_error_then_succeeds(self, fast_retries):
        calls = []

        @with_retry()
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, fast_retries):
        calls = []

        @with_retry()
        async def down():
            calls.append(1)
            raise httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            await down()
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, fast_retries):
        calls = []

        @with_retry()
        async def broken():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await broken()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_retryable_status_code(self, fast_retries):
        calls = []
        request = httpx.Request("GET", "https://api.example/token")

        @with_retry(max_retries=1)
        async def busy():
            calls.append(1)
            response = httpx.Response(503, request=request)
            response.raise_for_status()

        with pytest.raises(httpx.HTTPStatusError):
            await busy()
        assert len(calls) == 2
