"""Exponential-backoff retries for single remote calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Awaitable, Callable, TypeVar

from .errors import is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 10
DEFAULT_INITIAL_DELAY = 3.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_JITTER = 1.0

_sleep = asyncio.sleep


def backoff_delay(
    attempt: int,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
) -> float:
    """Return the pause before retry number ``attempt + 1``.

    Args:
        attempt (int): Retries already made, starting at 0.
        initial_delay (float): Delay in seconds for the first retry.
        max_delay (float): Cap applied before jitter is added.
        jitter (float): Upper bound of the random extra delay.

    Returns:
        float: ``min(initial_delay * 2 ** attempt, max_delay)`` plus jitter.
    """
    base = min(initial_delay * (2 ** attempt), max_delay)
    return base + random.uniform(0, jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    *,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    classify: Callable[[BaseException], bool] = is_transient_error,
) -> T:
    """Await ``operation()``, retrying transient failures with backoff.

    Non-transient errors and the last transient error once ``max_retries``
    retries have been spent are re-raised unchanged.

    Args:
        operation: Zero-argument callable returning an awaitable.
        max_retries (int): Retries allowed after the first call.
        initial_delay (float): Seconds to wait before the first retry.
        max_delay (float): Cap on the exponential part of the delay.
        jitter (float): Maximum random seconds added to every delay.
        classify: Predicate returning ``True`` for retryable errors.

    Returns:
        The value produced by the first successful call.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if initial_delay <= 0:
        raise ValueError("initial_delay must be > 0")

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            transient = classify(exc)
            if not transient or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay, jitter)
            logger.warning(
                "Transient error (retry %d/%d, sleeping %.2fs): %s",
                attempt + 1,
                max_retries,
                delay,
                exc,
            )
            await _sleep(delay)
            attempt += 1


def retrying(
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    **options,
):
    """Decorate an async function so every call goes through :func:`with_retry`."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_retries,
                initial_delay,
                **options,
            )

        return wrapper

    return decorator


__all__ = ["backoff_delay", "retrying", "with_retry"]
