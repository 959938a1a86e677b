"""
Bounded retry for store operations.

Connection establishment and schema metadata reads/writes share one
combinator: try immediately, then retry at a fixed interval until a
wall-clock timeout elapses.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, TypeVar

from theia_datastore.exceptions import RetryTimeoutError
from theia_datastore.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

T = TypeVar("T")


def poll_immediate(
    operation: Callable[[], T],
    *,
    interval: float,
    timeout: float,
    description: str,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Run an operation until it succeeds or the timeout elapses.

    The first attempt happens immediately. Exceptions outside ``retry_on``
    propagate at once.

    Args:
        operation: Zero-argument callable to attempt.
        interval: Seconds to wait between attempts.
        timeout: Overall wall-clock bound in seconds.
        description: Operation name used in logs and errors.
        retry_on: Exception types that trigger another attempt.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        RetryTimeoutError: If no attempt succeeded within the timeout. The
            last failure is kept as the cause.
    """
    start = clock()
    attempts = 0

    while True:
        attempts += 1
        try:
            return operation()
        except retry_on as e:
            elapsed = clock() - start
            logger.debug(
                "retry_attempt_failed",
                operation=description,
                attempt=attempts,
                elapsed_seconds=round(elapsed, 3),
                error=str(e),
            )
            if elapsed + interval > timeout:
                logger.warning(
                    "retry_exhausted",
                    operation=description,
                    attempts=attempts,
                    timeout_seconds=timeout,
                )
                raise RetryTimeoutError.exhausted(description, timeout, attempts, e) from e

        sleep(interval)
