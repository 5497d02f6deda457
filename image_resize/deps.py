from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .background import BackgroundTaskPool
from .cache_store import ImageCacheStore
from .config import Settings
from .encoder import FormatEncoder
from .eviction import CacheEvictionService
from .fetcher import ImageFetcher
from .referers import RefererTracker
from .retry import BackoffPolicy
from .service import ResizeService
from .store import Base, CACHE_TABLES, REFERER_TABLES
import logging

logger = logging.getLogger(__name__)

CACHE_DB_CACHE_SIZE_KB = 64000
CACHE_DB_MMAP_SIZE = 268435456  # 256MB
REFERER_DB_CACHE_SIZE_KB = 32000
REFERER_DB_MMAP_SIZE = 134217728  # 128MB
POOL_TIMEOUT_SEC = 1.0


def create_sqlite_engine(url: str, cache_size_kb: int = CACHE_DB_CACHE_SIZE_KB,
                         mmap_size: int = CACHE_DB_MMAP_SIZE,
                         pool_timeout: float = POOL_TIMEOUT_SEC) -> Engine:
    """SQLite engine in WAL mode: readers get their own connections while one writer holds the lock"""
    engine = create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        # Short checkout wait so contention lands in the store retry loop
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA cache_size=-{cache_size_kb}")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.execute(f"PRAGMA mmap_size={mmap_size}")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )


@dataclass
class Services:
    settings: Settings
    cache_engine: Engine
    referer_engine: Engine
    cache_store: ImageCacheStore
    referers: RefererTracker
    fetcher: ImageFetcher
    encoder: FormatEncoder
    pool: BackgroundTaskPool
    resize_service: ResizeService
    eviction: CacheEvictionService

    def close(self):
        self.eviction.stop()
        self.pool.shutdown(wait=True)
        self.fetcher.close()
        self.cache_engine.dispose()
        self.referer_engine.dispose()


def build_services(settings: Settings, fetcher: Optional[ImageFetcher] = None,
                   pool: Optional[BackgroundTaskPool] = None) -> Services:
    """Open both databases and wire every component together"""
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)

    cache_engine = create_sqlite_engine(
        settings.cache_database_url,
        pool_timeout=settings.store_pool_timeout_sec,
    )
    referer_engine = create_sqlite_engine(
        settings.referer_database_url,
        cache_size_kb=REFERER_DB_CACHE_SIZE_KB,
        mmap_size=REFERER_DB_MMAP_SIZE,
        pool_timeout=settings.store_pool_timeout_sec,
    )
    Base.metadata.create_all(bind=cache_engine, tables=CACHE_TABLES)
    Base.metadata.create_all(bind=referer_engine, tables=REFERER_TABLES)
    logger.info(f"Image cache database: {settings.cache_db_path}")
    logger.info(f"Referer database: {settings.referer_db_path}")

    retry = BackoffPolicy.from_settings(settings)
    cache_store = ImageCacheStore(cache_engine, create_session_factory(cache_engine), retry)
    referers = RefererTracker(create_session_factory(referer_engine), retry)

    fetcher = fetcher or ImageFetcher(timeout=settings.fetch_timeout_sec, proxy=settings.upstream_proxy)
    pool = pool or BackgroundTaskPool(settings.background_workers)
    encoder = FormatEncoder(settings.quality)

    resize_service = ResizeService(
        cache_store=cache_store,
        referers=referers,
        fetcher=fetcher,
        encoder=encoder,
        runner=pool,
        max_age=settings.max_age,
        max_dimension=settings.max_dimension,
    )
    eviction = CacheEvictionService(
        cache_store,
        max_size_bytes=settings.max_db_size_bytes,
        interval_seconds=settings.cleanup_interval_seconds,
        runner=pool,
    )

    return Services(
        settings=settings,
        cache_engine=cache_engine,
        referer_engine=referer_engine,
        cache_store=cache_store,
        referers=referers,
        fetcher=fetcher,
        encoder=encoder,
        pool=pool,
        resize_service=resize_service,
        eviction=eviction,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_resize_service(request: Request) -> ResizeService:
    return request.app.state.services.resize_service
