"""Bounded-concurrency batch runner with ordered results and progress reporting."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[T]]
ProgressCallback = Callable[[int], None]


def _percent(completed: int, total: int) -> int:
    # half-up, so 1/8 reports 13 rather than 12
    return int(completed * 100 / total + 0.5)


async def run_with_concurrency(
    jobs: Sequence[Job],
    limit: int,
    on_progress: Optional[ProgressCallback] = None,
) -> List[T]:
    """Run ``jobs`` with at most ``limit`` in flight and return their results in order.

    Progress is reported as 0 before anything starts and then once per
    completed job, ending at exactly 100. The first job failure becomes
    the outcome of the whole run; workers stop claiming new jobs from that
    point and no partial results are returned.

    Args:
        jobs (Sequence[Job]): Zero-argument callables returning awaitables.
        limit (int): Maximum number of jobs executing at once (>= 1).
        on_progress (Optional[ProgressCallback]): Receives integer percentages.

    Returns:
        List[T]: ``results[i]`` is the value produced by ``jobs[i]``.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    jobs = list(jobs)
    total = len(jobs)
    report = on_progress or (lambda _value: None)

    report(0)
    if not total:
        return []

    results: List[Optional[T]] = [None] * total
    cursor = 0
    completed = 0
    failed = False

    async def worker() -> None:
        nonlocal cursor, completed, failed
        while cursor < total and not failed:
            index = cursor
            cursor += 1
            try:
                value = await jobs[index]()
            except Exception:
                if failed:
                    # the batch already carries an earlier error
                    logger.debug("Job %d failed after the batch was aborted", index, exc_info=True)
                    return
                failed = True
                logger.error("Job %d of %d failed; aborting batch", index, total)
                raise
            results[index] = value
            completed += 1
            report(_percent(completed, total))

    workers = [worker() for _ in range(min(limit, total))]
    await asyncio.gather(*workers)
    return results  # type: ignore[return-value]


class BoundedScheduler:
    """Reusable concurrency policy for dispatching several batches."""

    def __init__(self, limit: int = 3) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit

    async def run(self, jobs: Sequence[Job], on_progress: Optional[ProgressCallback] = None) -> List[T]:
        return await run_with_concurrency(jobs, self.limit, on_progress)


__all__ = ["BoundedScheduler", "Job", "ProgressCallback", "run_with_concurrency"]
