"""
Bounded retry for RPC calls.

One loop, two knobs: which exceptions are retriable, and how long to wait
between attempts. Everything else propagates on the first occurrence.

Backoff is binary-exponential from ``min_delay``, capped at ``max_delay``,
with +/-10% jitter. ``sleep`` is injectable so tests never wait.

Cancellation is never retried: ``asyncio.CancelledError`` is a
BaseException and passes straight through.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from nexus_pay.errors import RpcError
from nexus_pay.logging_setup import get_logger

T = TypeVar("T")

_logger = get_logger("rpc.retry")

_JITTER_PCT = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt bound and backoff window.

    Attributes:
        limit: Maximum number of attempts (values below 1 mean one attempt).
        min_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
    """

    limit: int = 10
    min_delay: float = 0.5
    max_delay: float = 10.0

    @property
    def attempts(self) -> int:
        return max(1, self.limit)

    def delay(self, attempt_no: int) -> float:
        """Jittered delay after failed attempt ``attempt_no`` (1-based)."""
        base = min(self.min_delay * (2 ** (attempt_no - 1)), self.max_delay)
        jitter = base * _JITTER_PCT
        return min(self.max_delay, max(0.0, base + random.uniform(-jitter, jitter)))


def is_transient(exc: BaseException) -> bool:
    """True for transport failures and transient RPC statuses only."""
    if isinstance(exc, RpcError):
        return exc.transient
    return isinstance(exc, httpx.TransportError)


async def retry(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retriable: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    name: str = "rpc",
) -> T:
    """Call ``func`` until it succeeds, fails terminally, or the bound is hit.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt bound and backoff.
        retriable: Predicate deciding whether an exception is retried.
        sleep: Awaitable sleep, injectable for tests.
        name: Label used in log lines.

    Returns:
        The first successful result.

    Raises:
        Exception: The last exception seen, when it is not retriable or
            the attempt bound is exhausted.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as e:
            if attempt >= policy.attempts or not retriable(e):
                raise
            delay = policy.delay(attempt)
            _logger.debug(
                "retry:%s attempt=%d error=%s delay=%.3f",
                name,
                attempt,
                e.__class__.__name__,
                delay,
            )
            await sleep(delay)
            attempt += 1
