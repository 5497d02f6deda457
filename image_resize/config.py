from pydantic import field_validator
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_QUALITY = 90
DEFAULT_MAX_DB_SIZE_MB = 1000
DEFAULT_MAX_AGE = 86400  # 1 day


class Settings(BaseSettings):
    # Server
    port: int = 8080

    # Storage
    data_dir: str = "tmp"
    cache_db_name: str = "image_cache.db"
    referer_db_name: str = "http_refers.db"
    max_db_size: int = DEFAULT_MAX_DB_SIZE_MB  # megabytes
    cleanup_interval_seconds: int = 60
    store_retry_attempts: int = 3
    store_retry_delay_ms: int = 50
    store_pool_timeout_sec: float = 1.0

    # Encoding
    quality: int = DEFAULT_QUALITY
    max_dimension: int = 0  # 0 disables the clamp

    # Responses
    max_age: int = DEFAULT_MAX_AGE

    # Upstream fetch
    fetch_timeout_sec: float = 30.0
    upstream_proxy: Optional[str] = None

    # Background work (cache writes, referer tracking, vacuum)
    background_workers: int = 4

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @field_validator("quality", mode="before")
    @classmethod
    def _validate_quality(cls, value):
        try:
            quality = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid QUALITY value '{value}', must be 10-100, using default {DEFAULT_QUALITY}")
            return DEFAULT_QUALITY
        if quality < 10 or quality > 100:
            logger.warning(f"Invalid QUALITY value '{value}', must be 10-100, using default {DEFAULT_QUALITY}")
            return DEFAULT_QUALITY
        return quality

    @field_validator("max_db_size", mode="before")
    @classmethod
    def _validate_max_db_size(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid MAX_DB_SIZE value '{value}', using default {DEFAULT_MAX_DB_SIZE_MB}MB")
            return DEFAULT_MAX_DB_SIZE_MB

    @field_validator("max_age", mode="before")
    @classmethod
    def _validate_max_age(cls, value):
        try:
            age = int(value)
        except (TypeError, ValueError):
            age = -1
        if age < 0:
            logger.warning(f"Invalid MAX_AGE value '{value}', must be >= 0, using default {DEFAULT_MAX_AGE} (1 day)")
            return DEFAULT_MAX_AGE
        return age

    @field_validator("max_dimension", mode="before")
    @classmethod
    def _validate_max_dimension(cls, value):
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            logger.warning(f"Invalid MAX_DIMENSION value '{value}', clamp disabled")
            return 0

    @property
    def cache_db_path(self) -> Path:
        return Path(self.data_dir) / self.cache_db_name

    @property
    def referer_db_path(self) -> Path:
        return Path(self.data_dir) / self.referer_db_name

    @property
    def cache_database_url(self) -> str:
        return f"sqlite:///{self.cache_db_path}"

    @property
    def referer_database_url(self) -> str:
        return f"sqlite:///{self.referer_db_path}"

    @property
    def max_db_size_bytes(self) -> int:
        return self.max_db_size * 1024 * 1024


settings = Settings()
