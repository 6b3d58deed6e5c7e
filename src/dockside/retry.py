"""Bounded exponential-backoff retry for idempotent engine calls.

Only request/response calls go through here. Exec start is never retried:
an interactive stream can't be resumed mid-flight.
"""

from __future__ import annotations

import asyncio
import random
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias, TypeVar

import aiohttp

from dockside.errors import EngineError, NotFoundError
from dockside.logger import logger

if TYPE_CHECKING:
    from dockside.config import RetryConfig

T = TypeVar("T")

OnFailedAttempt: TypeAlias = Callable[[BaseException, int, int], Awaitable[None] | None]

_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
_RETRYABLE_MESSAGES = (
    "daemon is not running",
    "Cannot connect to the Docker daemon",
    "socket hang up",
)


def is_retryable_error(exc: BaseException) -> bool:
    """Transient transport failures and 408/429/5xx engine answers."""
    if isinstance(exc, NotFoundError):
        return False
    if isinstance(
        exc,
        ConnectionRefusedError
        | ConnectionResetError
        | TimeoutError
        | socket.gaierror
        | aiohttp.ClientConnectionError,
    ):
        return True
    if isinstance(exc, EngineError) and exc.status_code in _RETRYABLE_STATUSES:
        return True
    message = str(exc)
    return any(marker in message for marker in _RETRYABLE_MESSAGES)


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3
    factor: float = 2.0
    min_timeout: float = 1.0
    max_timeout: float = 30.0
    randomize: bool = True

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            retries=config.retries,
            factor=config.factor,
            min_timeout=config.min_timeout,
            max_timeout=config.max_timeout,
            randomize=config.randomize,
        )

    @classmethod
    def exponential(cls, max_attempts: int = 5) -> RetryPolicy:
        return cls(retries=max_attempts - 1, factor=2.0, min_timeout=1.0, max_timeout=30.0)

    @classmethod
    def linear(cls, max_attempts: int = 5, delay: float = 1.0) -> RetryPolicy:
        return cls(
            retries=max_attempts - 1,
            factor=1.0,
            min_timeout=delay,
            max_timeout=delay,
            randomize=False,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        jitter = random.uniform(1, 2) if self.randomize else 1.0
        return min(self.min_timeout * self.factor ** (attempt - 1) * jitter, self.max_timeout)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
        on_failed_attempt: OnFailedAttempt | None = None,
        operation: str = "engine call",
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as exc:
                retries_left = self.retries - attempt + 1
                if retries_left <= 0 or not should_retry(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt failed, retrying",
                    operation=operation,
                    attempt=attempt,
                    retries_left=retries_left,
                    delay=round(delay, 2),
                    err=str(exc),
                )
                if on_failed_attempt is not None:
                    result = on_failed_attempt(exc, attempt, retries_left)
                    if result is not None:
                        await result
                await asyncio.sleep(delay)


class PredicateNotSatisfied(Exception):
    pass


async def retry_until(
    fn: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    policy: RetryPolicy | None = None,
    max_duration: float = 60.0,
) -> T:
    """Retry ``fn`` until ``predicate(result)`` holds, within ``max_duration`` seconds."""
    policy = policy or RetryPolicy()
    deadline = time.monotonic() + max_duration

    async def _attempt() -> T:
        if time.monotonic() > deadline:
            raise TimeoutError(f"Maximum duration of {max_duration}s exceeded")
        result = await fn()
        if not predicate(result):
            raise PredicateNotSatisfied
        return result

    def _should_retry(exc: BaseException) -> bool:
        if isinstance(exc, PredicateNotSatisfied):
            return True
        if isinstance(exc, TimeoutError) and time.monotonic() > deadline:
            return False
        return is_retryable_error(exc)

    return await policy.run(_attempt, should_retry=_should_retry, operation="retry_until")
