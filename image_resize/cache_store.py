"""
SQLite-backed image cache.

One row per (url, width key). Width key 0 holds the untransformed upstream
bytes; every other key holds a transformed rendition. Writes are upserts, so
the last writer for a key wins.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, insert, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .retry import BackoffPolicy
from .store import ImageCacheEntry

logger = logging.getLogger(__name__)

ORIGINAL_WIDTH_KEY = 0

# Count is evaluated inside the statement so the delete never works from a stale total
DELETE_OLDEST_HALF_SQL = text("""
    DELETE FROM image_cache
    WHERE id IN (
        SELECT id FROM image_cache
        ORDER BY created_at ASC, id ASC
        LIMIT (SELECT MAX(1, COUNT(*) / 2) FROM image_cache)
    )
""")


@dataclass(frozen=True)
class CachedImage:
    data: bytes
    content_type: str
    response_format: str


class ImageCacheStore:
    """Persistent key -> blob mapping for resized and original images"""

    def __init__(self, engine: Engine, session_factory: sessionmaker, retry: Optional[BackoffPolicy] = None):
        self.engine = engine
        self.session_factory = session_factory
        self.retry = retry or BackoffPolicy()

    def get(self, url: str, width: int) -> Optional[CachedImage]:
        """Return the cached payload for (url, width), or None when absent.

        Width 0 returns the original upstream bytes, anything else the resized bytes.
        """
        payload_column = (
            ImageCacheEntry.original_data if width == ORIGINAL_WIDTH_KEY
            else ImageCacheEntry.resized_data
        )
        query = (
            select(payload_column, ImageCacheEntry.content_type, ImageCacheEntry.response_format)
            .where(ImageCacheEntry.url == url, ImageCacheEntry.width == width)
            .limit(1)
        )

        def _read():
            with self.session_factory() as db:
                return db.execute(query).first()

        row = self.retry.run(_read, description="cache read")
        if row is None or row[0] is None:
            return None

        return CachedImage(data=row[0], content_type=row[1] or "", response_format=row[2] or "")

    def put(self, url: str, width: int, original_data: Optional[bytes], resized_data: Optional[bytes],
            content_type: str, response_format: str) -> None:
        """Upsert a cache entry; replaces any existing row for (url, width)"""
        statement = (
            insert(ImageCacheEntry)
            .prefix_with("OR REPLACE")
            .values(
                url=url,
                width=width,
                original_data=original_data,
                resized_data=resized_data,
                content_type=content_type,
                response_format=response_format,
            )
        )

        def _write():
            with self.session_factory() as db:
                db.execute(statement)
                db.commit()

        self.retry.run(_write, description="cache write")
        logger.debug(f"Cached {url} (width key {width}, {len(resized_data or original_data or b'')} bytes)")

    def put_original(self, url: str, data: bytes, content_type: str, response_format: str) -> None:
        """Cache the untransformed upstream bytes under width key 0"""
        self.put(url, ORIGINAL_WIDTH_KEY, data, None, content_type, response_format)

    def size(self) -> int:
        """Current database footprint in bytes"""
        def _size():
            with self.engine.connect() as conn:
                page_count = conn.exec_driver_sql("PRAGMA page_count").scalar()
                page_size = conn.exec_driver_sql("PRAGMA page_size").scalar()
                return int(page_count or 0) * int(page_size or 0)

        return self.retry.run(_size, description="cache size")

    def count(self) -> int:
        def _count():
            with self.session_factory() as db:
                return db.execute(select(func.count()).select_from(ImageCacheEntry)).scalar() or 0

        return self.retry.run(_count, description="cache count")

    def delete_oldest_half(self) -> int:
        """Delete the oldest half of all entries (at least one) in a single transaction.

        Returns:
            Number of rows removed.
        """
        with self.session_factory() as db:
            with db.begin():
                result = db.execute(DELETE_OLDEST_HALF_SQL)
                deleted = result.rowcount or 0

        return deleted

    def vacuum(self) -> None:
        """Reclaim free pages. VACUUM cannot run inside a transaction."""
        with self.engine.connect() as conn:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.exec_driver_sql("VACUUM")
