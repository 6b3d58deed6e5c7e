"""Tests for RetryPolicy backoff and retry classification."""

from __future__ import annotations

import socket

import aiohttp
import pytest

from dockside.config import RetryConfig
from dockside.errors import (
    EngineError,
    EngineIOError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from dockside.retry import PredicateNotSatisfied, RetryPolicy, is_retryable_error, retry_until

# Zero delays keep the tests fast without patching asyncio.sleep
FAST = RetryPolicy(retries=3, min_timeout=0.0, max_timeout=0.0, randomize=False)


class Flaky:
    """Fails with ``errors`` in order, then returns ``value``."""

    def __init__(self, *errors: BaseException, value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestIsRetryable:
    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionRefusedError(),
            ConnectionResetError(),
            TimeoutError(),
            socket.gaierror(),
            aiohttp.ServerDisconnectedError(),
            EngineError("busy", status_code=503),
            EngineError("slow down", status_code=429),
            NetworkError("Cannot connect to the Docker daemon at unix:///var/run/docker.sock"),
            RuntimeError("socket hang up"),
        ],
    )
    def test_transient(self, exc: BaseException) -> None:
        assert is_retryable_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            NotFoundError("Container", "abc"),
            ValidationError("bad request"),
            EngineError("conflict", status_code=409),
            ValueError("nope"),
        ],
    )
    def test_permanent(self, exc: BaseException) -> None:
        assert not is_retryable_error(exc)


class TestRun:
    async def test_retries_then_succeeds(self) -> None:
        fn = Flaky(ConnectionResetError(), EngineIOError("boom", status_code=500))

        assert await FAST.run(fn) == "ok"
        assert fn.calls == 3

    async def test_gives_up_after_retries(self) -> None:
        fn = Flaky(*[ConnectionRefusedError(f"try {i}") for i in range(10)])

        with pytest.raises(ConnectionRefusedError, match="try 3"):
            await FAST.run(fn)
        assert fn.calls == 4

    async def test_not_found_is_never_retried(self) -> None:
        fn = Flaky(NotFoundError("Exec session", "e1"))

        with pytest.raises(NotFoundError):
            await FAST.run(fn)
        assert fn.calls == 1

    async def test_zero_retries(self) -> None:
        fn = Flaky(ConnectionResetError())

        with pytest.raises(ConnectionResetError):
            await RetryPolicy(retries=0).run(fn)
        assert fn.calls == 1

    async def test_on_failed_attempt_sees_each_failure(self) -> None:
        seen: list[tuple[str, int, int]] = []

        async def record(exc: BaseException, attempt: int, retries_left: int) -> None:
            seen.append((type(exc).__name__, attempt, retries_left))

        fn = Flaky(ConnectionResetError(), TimeoutError())
        await FAST.run(fn, on_failed_attempt=record)

        assert seen == [("ConnectionResetError", 1, 3), ("TimeoutError", 2, 2)]

    async def test_custom_should_retry(self) -> None:
        fn = Flaky(ValueError("transient in this context"))

        assert await FAST.run(fn, should_retry=lambda exc: True) == "ok"


class TestBackoff:
    def test_exponential_growth_capped(self) -> None:
        policy = RetryPolicy(factor=2.0, min_timeout=1.0, max_timeout=5.0, randomize=False)

        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self) -> None:
        policy = RetryPolicy(factor=2.0, min_timeout=1.0, max_timeout=100.0)

        for _ in range(50):
            assert 2.0 <= policy.delay_for(2) <= 4.0

    def test_constructors(self) -> None:
        assert RetryPolicy.exponential(max_attempts=5).retries == 4
        linear = RetryPolicy.linear(max_attempts=3, delay=0.5)
        assert linear.retries == 2
        assert [linear.delay_for(n) for n in (1, 2)] == [0.5, 0.5]

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config(RetryConfig(retries=5, min_timeout=0.1, randomize=False))

        assert policy.retries == 5
        assert policy.min_timeout == 0.1
        assert policy.randomize is False


class TestRetryUntil:
    async def test_waits_for_predicate(self) -> None:
        results = iter([False, False, True])

        async def ready() -> bool:
            return next(results)

        assert await retry_until(ready, bool, policy=FAST) is True

    async def test_gives_up_when_predicate_never_holds(self) -> None:
        async def never() -> bool:
            return False

        with pytest.raises(PredicateNotSatisfied):
            await retry_until(never, bool, policy=FAST)
