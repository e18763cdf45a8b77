"""Bounded retry policy for optimistic-concurrency conflicts."""
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from marketplace.domain import VersionConflictError


def conflict_retrying(max_attempts: int, jitter: float) -> AsyncRetrying:
    """
    Retry policy for load-check-write loops.

    Retries only on ``VersionConflictError``, waits a random ``[0, jitter]``
    seconds between attempts and re-raises the last conflict once
    ``max_attempts`` is exhausted.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random(0, jitter),
        reraise=True,
    )
