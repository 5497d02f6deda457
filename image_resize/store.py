from sqlalchemy import Column, Integer, Text, DateTime, Date, Boolean, LargeBinary, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp with microseconds, so insertion order survives same-second writes"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImageCacheEntry(Base):
    __tablename__ = "image_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(Text, nullable=False)
    width = Column(Integer)  # 0 = original image, see resize.cache_width
    original_data = Column(LargeBinary, nullable=True)
    resized_data = Column(LargeBinary, nullable=True)
    content_type = Column(Text)
    response_format = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('url', 'width', name='uq_image_cache_url_width'),
        Index('idx_url_width', 'url', 'width'),
        Index('idx_image_cache_created', 'created_at', 'id'),
    )


class RefererRecord(Base):
    __tablename__ = "referer_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    base_domain = Column(Text, nullable=False)
    date_requested = Column(Date, nullable=False)
    request_count = Column(Integer, default=1, nullable=False)
    is_disabled = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint('base_domain', 'date_requested', name='uq_referer_domain_date'),
        Index('idx_domain_date', 'base_domain', 'date_requested'),
    )


CACHE_TABLES = [ImageCacheEntry.__table__]
REFERER_TABLES = [RefererRecord.__table__]
