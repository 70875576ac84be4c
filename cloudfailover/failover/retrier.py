"""Bounded retry for cloud API calls and the task-wait poll."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from cloudfailover import constants
from cloudfailover.errors import TaskInProgressError

logger = logging.getLogger("cloudfailover.retrier")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    interval_s: float
    retry_on: tuple[type[BaseException], ...] = (Exception,)


CLOUD_API_RETRY = RetryPolicy(constants.MAX_RETRIES, constants.RETRY_INTERVAL_S)
# Only an in-flight task is polled; storage faults already carry their own retry
TASK_WAIT_RETRY = RetryPolicy(
    constants.TASK_WAIT_MAX_ATTEMPTS,
    constants.TASK_WAIT_INTERVAL_S,
    retry_on=(TaskInProgressError,),
)


async def retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy = CLOUD_API_RETRY,
    **kwargs: Any,
) -> T:
    """Await ``operation(*args, **kwargs)`` until it succeeds or the attempt budget runs out.

    Exceptions outside ``policy.retry_on`` propagate on the first attempt.
    When every attempt fails the last exception is re-raised unchanged.
    """
    name = getattr(operation, "__name__", repr(operation))
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation(*args, **kwargs)
        except policy.retry_on as exc:
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %s", name, attempts, exc)
                raise
            logger.warning("%s attempt %d/%d failed: %s", name, attempt, attempts, exc)
            await asyncio.sleep(policy.interval_s)
