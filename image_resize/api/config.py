#!/usr/bin/env python3
"""
Configuration, statistics and domain management endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, Query, Request
from pydantic import ValidationError
from datetime import date, timedelta
from typing import Optional
import logging

from ..deps import Services, get_services
from ..referers import SENTINEL_DOMAINS
from ..retry import StoreUnavailableError
from ..schemas import (
    ConfigInfo, DomainStatSchema, RefererStatSchema, RefererStatsResponse,
    ToggleRequest, ToggleResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config", tags=["config"])

DEFAULT_STATS_WINDOW_DAYS = 30


def readable_size(size_bytes: float) -> str:
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    return f"{size_bytes / 1024:.2f} KB"


def usage_percent(current_mb: float, max_mb: float) -> int:
    if max_mb <= 0:
        return 0
    return int(current_mb / max_mb * 100 + 0.5)


def average_image_size(total_bytes: int, image_count: int) -> str:
    if image_count == 0:
        return "N/A"
    return readable_size(total_bytes / image_count)


@router.get("", response_model=ConfigInfo)
def get_config(services: Services = Depends(get_services)) -> ConfigInfo:
    """Current settings plus cache and referer statistics"""
    settings = services.settings
    try:
        db_size = services.cache_store.size()
        image_count = services.cache_store.count()
        domain_stats = services.referers.aggregated_stats()
    except StoreUnavailableError as e:
        logger.error(f"Error collecting config stats: {e}")
        raise HTTPException(status_code=503, detail=f"Store unavailable: {str(e)}")

    db_size_mb = db_size / (1024 * 1024)
    return ConfigInfo(
        port=settings.port,
        max_db_size_mb=settings.max_db_size,
        webp_quality=settings.quality,
        max_age=settings.max_age,
        max_dimension=settings.max_dimension,
        db_size_mb=db_size_mb,
        db_size_bytes=db_size,
        db_size_readable=readable_size(db_size),
        image_count=image_count,
        usage_percent=usage_percent(db_size_mb, settings.max_db_size),
        average_image_size=average_image_size(db_size, image_count),
        referer_stats=[DomainStatSchema.model_validate(stat) for stat in domain_stats],
        eviction=services.eviction.get_status(),
    )


@router.get("/referers", response_model=RefererStatsResponse)
def get_referer_stats(
    start: Optional[date] = Query(None, description="First day, inclusive"),
    end: Optional[date] = Query(None, description="Last day, inclusive"),
    services: Services = Depends(get_services),
) -> RefererStatsResponse:
    """Per-day request counts, last 30 days unless a range is given"""
    end = end or date.today()
    start = start or end - timedelta(days=DEFAULT_STATS_WINDOW_DAYS)
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    try:
        stats = services.referers.stats_between(start, end)
    except StoreUnavailableError as e:
        logger.error(f"Error getting referer stats: {e}")
        raise HTTPException(status_code=503, detail=f"Store unavailable: {str(e)}")

    return RefererStatsResponse(
        start=start,
        end=end,
        stats=[RefererStatSchema.model_validate(stat) for stat in stats],
    )


async def parse_toggle_request(request: Request) -> Optional[ToggleRequest]:
    """Decode the toggle body, None when it is not a valid JSON object"""
    try:
        return ToggleRequest.model_validate_json(await request.body())
    except ValidationError:
        return None


@router.post("/toggle-domain", response_model=ToggleResponse, response_model_exclude_none=True)
def toggle_domain(body: Optional[ToggleRequest] = Depends(parse_toggle_request),
                  services: Services = Depends(get_services)) -> ToggleResponse:
    """Flip the disabled flag of a referring domain"""
    if body is None:
        return ToggleResponse(success=False, error="Invalid JSON")

    domain = body.domain.strip()
    if not domain:
        return ToggleResponse(success=False, error="Domain is required")

    if domain in SENTINEL_DOMAINS:
        return ToggleResponse(success=False, error="Cannot toggle status for special domains")

    try:
        disabled = services.referers.toggle_disabled(domain)
    except StoreUnavailableError as e:
        logger.error(f"Error toggling domain {domain}: {e}")
        return ToggleResponse(success=False, error=f"Failed to toggle domain status: {e}")

    return ToggleResponse(success=True, disabled=disabled)
