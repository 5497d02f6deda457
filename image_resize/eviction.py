"""
Size-bounded cache eviction.

A scheduler tick measures the cache database. Once it grows past the limit
the oldest half of the entries (by insertion time) is deleted and a VACUUM
is handed to the background pool to give the pages back to the filesystem.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from .cache_store import ImageCacheStore
from .retry import StoreUnavailableError

logger = logging.getLogger(__name__)

JOB_ID = "cache_eviction"


class EvictionState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    EVICTING = "evicting"
    VACUUMING = "vacuuming"


@dataclass(frozen=True)
class EvictionResult:
    size_before: int
    size_after: int
    deleted: int
    evicted: bool


class CacheEvictionService:
    """Keeps the image cache below max_size_bytes"""

    def __init__(self, cache_store: ImageCacheStore, max_size_bytes: int, interval_seconds: int = 60,
                 runner=None):
        self.cache_store = cache_store
        self.max_size_bytes = max_size_bytes
        self.interval_seconds = interval_seconds
        self.runner = runner
        self.scheduler = BackgroundScheduler()
        self.is_running = False
        self.state = EvictionState.IDLE
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[EvictionResult] = None
        self._lock = threading.Lock()

    def check(self) -> Optional[EvictionResult]:
        """One eviction tick. Returns None when skipped or when the store is unreachable."""
        with self._lock:
            if self.state != EvictionState.IDLE:
                logger.debug(f"Eviction tick skipped, service is {self.state.value}")
                return None
            self.state = EvictionState.CHECKING

        self.last_run = datetime.now(timezone.utc)

        try:
            size_before = self.cache_store.size()
        except StoreUnavailableError as e:
            logger.error(f"Could not measure cache size: {e}")
            self.state = EvictionState.IDLE
            return None

        if size_before <= self.max_size_bytes:
            self.state = EvictionState.IDLE
            self.last_result = EvictionResult(size_before, size_before, 0, False)
            return self.last_result

        logger.info(
            f"Cache size {size_before / 1024 / 1024:.2f}MB exceeds limit "
            f"{self.max_size_bytes / 1024 / 1024:.0f}MB, evicting oldest entries"
        )
        self.state = EvictionState.EVICTING
        try:
            deleted = self.cache_store.delete_oldest_half()
        except SQLAlchemyError as e:
            logger.error(f"Cache eviction failed: {e}")
            self.state = EvictionState.IDLE
            return None

        logger.info(f"Evicted {deleted} cache entries")

        self.state = EvictionState.VACUUMING
        if self.runner is not None:
            try:
                self.runner.submit(self._vacuum, description="cache vacuum")
            except RuntimeError as e:
                # Pool already shut down
                logger.error(f"Could not schedule cache vacuum: {e}")
                self.state = EvictionState.IDLE
        else:
            self._vacuum()

        try:
            size_after = self.cache_store.size()
        except StoreUnavailableError:
            size_after = size_before

        self.last_result = EvictionResult(size_before, size_after, deleted, True)
        return self.last_result

    def _vacuum(self):
        try:
            self.cache_store.vacuum()
            logger.info("Cache vacuum completed")
        except SQLAlchemyError as e:
            logger.error(f"Cache vacuum failed: {e}")
        finally:
            self.state = EvictionState.IDLE

    def start(self):
        """Start the periodic eviction check"""
        if self.is_running:
            logger.warning("Eviction service is already running")
            return

        self.scheduler.add_job(
            self.check,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Evict oldest image cache entries",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info(
            f"Eviction service started, checking every {self.interval_seconds}s "
            f"(limit {self.max_size_bytes / 1024 / 1024:.0f}MB)"
        )

    def stop(self):
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Eviction service stopped")

    def get_status(self) -> dict:
        job = self.scheduler.get_job(JOB_ID) if self.is_running else None
        return {
            "running": self.is_running,
            "state": self.state.value,
            "max_size_bytes": self.max_size_bytes,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_result": asdict(self.last_result) if self.last_result else None,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
        }
