"""Retry helper applying exponential backoff between attempts."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffPolicy:
    """Call an operation up to ``attempts`` times, doubling the delay each retry."""

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 1.5,
        maximum: Optional[float] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.base_delay = max(0.0, base_delay)
        self.maximum = maximum
        self._sleep = sleep

    def schedule(self) -> List[float]:
        """Delays slept after each failed attempt except the last."""

        delays: List[float] = []
        for attempt in range(self.attempts - 1):
            delay = self.base_delay * (2**attempt)
            if self.maximum is not None:
                delay = min(delay, self.maximum)
            delays.append(delay)
        return delays

    def run(
        self,
        operation: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        description: str = "operation",
    ) -> T:
        delays = self.schedule()
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except retry_on as exc:
                if attempt >= self.attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", description, attempt, exc
                    )
                    raise
                delay = delays[attempt - 1]
                logger.warning(
                    "%s attempt %d/%d failed (%s). Retrying in %.1fs",
                    description,
                    attempt,
                    self.attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)


__all__ = ["BackoffPolicy"]
