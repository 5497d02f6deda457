"""
Backoff policy for SQLite access.

SQLite allows one writer at a time, so concurrent cache writes and referer
upserts occasionally see "database is locked". Operations are retried a fixed
number of times with a fixed delay before the store is declared unavailable.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreUnavailableError(Exception):
    """Raised when a store operation still fails after every retry"""


@dataclass(frozen=True)
class BackoffPolicy:
    """Fixed-delay retry strategy.

    Args:
        attempts: Total number of tries, including the first one
        delay: Seconds to wait between tries
        sleep: Sleep function, replaceable with a fake clock in tests
    """
    attempts: int = 3
    delay: float = 0.05
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            attempts=max(1, settings.store_retry_attempts),
            delay=settings.store_retry_delay_ms / 1000.0,
        )

    def run(self, operation: Callable[[], T], description: str = "store operation") -> T:
        last_error = None

        for attempt in range(self.attempts):
            try:
                return operation()
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt + 1}/{self.attempts}): {e}")
                if attempt < self.attempts - 1:
                    self.sleep(self.delay)

        raise StoreUnavailableError(
            f"{description} failed after {self.attempts} attempts: {last_error}"
        ) from last_error
