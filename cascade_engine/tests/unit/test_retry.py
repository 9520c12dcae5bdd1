"""Unit tests for call-site retry with exponential backoff."""

from __future__ import annotations

import pytest
from cascade_engine.config import load_settings
from cascade_engine.errors import ConflictError, NetworkOrServerError, ValidationError
from cascade_engine.executor.retry import RetryConfig, async_retry_with_backoff, compute_delay, is_retryable


class _Flaky:
    """Fails with *error* for the first *failures* calls, then returns ``"ok"``."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestComputeDelay:
    def test_exponential_without_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=False)
        assert [compute_delay(i, config) for i in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_within_bounds(self):
        config = RetryConfig(base_delay=2.0, max_delay=10.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= compute_delay(0, config) <= 3.0

    def test_from_settings(self):
        settings = load_settings(retry_max_attempts=5, retry_base_delay=0.5, retry_max_delay=4.0)
        config = RetryConfig.from_settings(settings)
        assert (config.max_retries, config.base_delay, config.max_delay) == (5, 0.5, 4.0)


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = _Flaky(2, NetworkOrServerError("upstream 503"))
        sleeps = _Sleeps()
        result = await async_retry_with_backoff(fn, RetryConfig(max_retries=3, jitter=False), sleep=sleeps)
        assert result == "ok"
        assert fn.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        fn = _Flaky(10, NetworkOrServerError("down"))
        sleeps = _Sleeps()
        with pytest.raises(NetworkOrServerError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=2, jitter=False), sleep=sleeps)
        assert fn.calls == 3
        assert len(sleeps.delays) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ValidationError("bad"), ConflictError("busy", operation_id="x"), RuntimeError("boom")],
    )
    async def test_non_retryable_raised_immediately(self, error):
        fn = _Flaky(1, error)
        sleeps = _Sleeps()
        with pytest.raises(type(error)):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=3), sleep=sleeps)
        assert fn.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        fn = _Flaky(1, RuntimeError("flaky"))
        result = await async_retry_with_backoff(
            fn,
            RetryConfig(max_retries=1, jitter=False),
            should_retry=lambda exc: isinstance(exc, RuntimeError),
            sleep=_Sleeps(),
        )
        assert result == "ok"

    def test_is_retryable(self):
        assert is_retryable(NetworkOrServerError("x"))
        assert not is_retryable(ValidationError("x"))
        assert not is_retryable(ValueError("x"))
