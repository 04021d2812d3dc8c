"""Tests for the retry policy."""

from __future__ import annotations

import pytest

from albumsync.services.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, exc: type[Exception] = ConnectionError) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


def _policy(delays: list[float], **kwargs: object) -> RetryPolicy:
    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    return RetryPolicy(sleep=fake_sleep, **kwargs)  # type: ignore[arg-type]


class TestRetryPolicy:
    async def test_success_needs_no_retry(self) -> None:
        delays: list[float] = []
        op = Flaky(0)
        assert await _policy(delays).run(op) == "ok"
        assert op.calls == 1
        assert delays == []

    async def test_recovers_after_transient_failures(self) -> None:
        delays: list[float] = []
        op = Flaky(2)
        assert await _policy(delays, max_retries=3).run(op) == "ok"
        assert op.calls == 3
        assert len(delays) == 2

    async def test_gives_up_after_max_retries(self) -> None:
        delays: list[float] = []
        op = Flaky(10)
        with pytest.raises(ConnectionError, match="failure 4"):
            await _policy(delays, max_retries=3).run(op)
        assert op.calls == 4
        assert len(delays) == 3

    async def test_non_matching_exception_not_retried(self) -> None:
        delays: list[float] = []
        op = Flaky(1, exc=KeyError)
        with pytest.raises(KeyError):
            await _policy(delays).run(op, retry_on=(ConnectionError,))
        assert op.calls == 1

    async def test_zero_retries_means_single_attempt(self) -> None:
        delays: list[float] = []
        op = Flaky(1)
        with pytest.raises(ConnectionError):
            await _policy(delays, max_retries=0).run(op)
        assert op.calls == 1

    async def test_backoff_without_jitter_is_exponential_and_capped(self) -> None:
        delays: list[float] = []
        op = Flaky(5)
        policy = _policy(delays, max_retries=5, base_delay=1.0, max_delay=5.0, jitter=False)
        assert await policy.run(op) == "ok"
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jittered_delay_within_bounds(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        for attempt in range(8):
            ceiling = min(2**attempt, 10.0)
            for _ in range(20):
                assert 0 <= policy.compute_delay(attempt) <= ceiling

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"base_delay": -0.5}, {"max_delay": -1.0}],
    )
    def test_invalid_configuration_rejected(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)  # type: ignore[arg-type]
