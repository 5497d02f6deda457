"""
Fire-and-forget work: cache writes, referer tracking and vacuum.

The request path never waits on these. Failures end up in the log only.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskPool:
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="image-resize-bg",
        )

    def submit(self, fn: Callable, *args, description: Optional[str] = None, **kwargs) -> Future:
        """Run fn in a worker thread; exceptions are logged, never raised"""
        future = self._executor.submit(fn, *args, **kwargs)
        label = description or getattr(fn, "__name__", "background task")
        future.add_done_callback(lambda f: self._log_failure(f, label))
        return future

    @staticmethod
    def _log_failure(future: Future, label: str):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background task '{label}' failed: {error}")

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
