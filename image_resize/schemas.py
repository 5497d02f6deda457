from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import date, datetime


class ToggleRequest(BaseModel):
    domain: str = ""


class ToggleResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    disabled: Optional[bool] = None


class DomainStatSchema(BaseModel):
    domain: str
    total_count: int
    is_disabled: bool

    class Config:
        from_attributes = True


class RefererStatSchema(BaseModel):
    domain: str
    date_requested: date
    request_count: int

    class Config:
        from_attributes = True


class RefererStatsResponse(BaseModel):
    start: date
    end: date
    stats: List[RefererStatSchema] = Field(default_factory=list)


class ConfigInfo(BaseModel):
    port: int
    max_db_size_mb: int
    webp_quality: int
    max_age: int
    max_dimension: int
    db_size_mb: float
    db_size_bytes: int
    db_size_readable: str
    image_count: int
    usage_percent: int
    average_image_size: str
    referer_stats: List[DomainStatSchema] = Field(default_factory=list)
    eviction: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    services: Dict[str, str]
