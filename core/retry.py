"""
Retry helpers shared by the pipeline, the progression engine and the materializer.

- retry_with_backoff: bounded retry with exponential backoff for planner/coach calls
- retry_on_conflict: re-run a read-decide-write cycle after a lost conditional write
"""
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.exceptions import ConflictError, QuestlineError
from core.logger import get_logger

logger = get_logger("retry")

R = TypeVar("R")


class DeadlineExceeded(QuestlineError):
    """The overall deadline passed before the operation could finish."""

    def __init__(self, operation: str):
        super().__init__(f"{operation} exceeded its deadline")
        self.operation = operation


def retry_with_backoff(
    fn: Callable[[], R],
    *,
    retries: int,
    backoff_seconds: float,
    operation: str,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> R:
    """
    Call ``fn`` up to ``retries + 1`` times.

    Waits ``backoff_seconds * 2 ** (attempt - 1)`` before each retry. When a
    ``deadline`` (in ``clock`` units) is given, no attempt starts after it and no
    wait extends past it; DeadlineExceeded is raised instead.
    """
    attempt = 0
    while True:
        if deadline is not None and clock() >= deadline:
            raise DeadlineExceeded(operation)
        try:
            return fn()
        except retry_on as e:
            if attempt >= retries:
                logger.error(f"{operation} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            if deadline is not None and clock() + delay >= deadline:
                logger.error(f"{operation} cannot retry before deadline: {e}")
                raise DeadlineExceeded(operation) from e
            logger.warning(
                f"{operation} attempt {attempt} failed ({e}); retrying in {delay:.1f}s"
            )
            sleep(delay)


def retry_on_conflict(fn: Callable[[], R], *, limit: int, operation: str) -> R:
    """
    Re-run ``fn`` while it raises ConflictError, up to ``limit`` attempts.

    ``fn`` must re-read the persisted state on every call.
    """
    limit = max(limit, 1)
    for attempt in range(1, limit + 1):
        try:
            return fn()
        except ConflictError as e:
            if attempt >= limit:
                logger.error(f"{operation}: giving up after {attempt} conflicts")
                raise
            logger.info(f"{operation}: conflict on {e.entity} {e.entity_id}, re-reading")
    raise AssertionError("unreachable")
