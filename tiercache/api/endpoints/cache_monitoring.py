"""
Cache Monitoring API Endpoints

API endpoints for cache statistics, size reporting, configuration,
level control, validation, capacity management and maintenance.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

import structlog
from ...domain.cache.exceptions import CacheException, CacheHTTPException
from ...domain.cache.value_objects import CacheLevel
from ...services.cache.cache_manager import CacheManager, get_cache_manager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/monitoring/cache", tags=["cache-monitoring"])


# Pydantic models for API requests/responses
class HitRatioResponse(BaseModel):
    """Hit ratio response model."""

    hit_ratio: float
    levels: List[str]


class ConfigurationUpdateRequest(BaseModel):
    """Configuration update request model."""

    changes: Dict[str, Any] = Field(
        ..., description="Partial configuration, deep-merged into the current one"
    )


class LevelToggleRequest(BaseModel):
    """Level toggle request model."""

    enabled: bool = Field(..., description="Enable or disable the level")


class PerformanceValidationRequest(BaseModel):
    """Performance validation request model."""

    duration_seconds: Optional[float] = Field(
        None, gt=0, le=3600, description="Throughput run duration"
    )


class ConcurrencyValidationRequest(BaseModel):
    """Concurrency validation request model."""

    target_rpm: Optional[int] = Field(
        None, ge=1, description="Required operations per minute, configured target if unset"
    )
    duration_seconds: Optional[float] = Field(
        None, gt=0, le=3600, description="Worker run duration"
    )


class MaintenanceRequest(BaseModel):
    """Maintenance request model."""

    operations: List[str] = Field(
        default_factory=lambda: ["cleanup", "optimize"],
        description="Operations to run: cleanup, optimize, validate",
    )


def _parse_levels(levels: Optional[List[str]]) -> Optional[List[CacheLevel]]:
    if not levels:
        return None
    try:
        return CacheLevel.by_priority(levels)
    except CacheException as e:
        raise CacheHTTPException(e, status_code=400)


# Statistics endpoints
@router.get("/stats")
async def get_cache_stats(
    levels: Optional[List[str]] = Query(None, description="Levels to report on"),
    manager: CacheManager = Depends(get_cache_manager),
):
    """Get counters, ratios, efficiency and per-level statistics."""
    selected = _parse_levels(levels)
    try:
        return manager.get_stats(selected)
    except Exception as e:
        logger.error("Failed to get cache statistics", error=str(e))
        raise HTTPException(
            status_code=500, detail=f"Failed to get cache statistics: {str(e)}"
        )


@router.get("/size")
async def get_cache_size(
    levels: Optional[List[str]] = Query(None, description="Levels to measure"),
    manager: CacheManager = Depends(get_cache_manager),
):
    """Get entries and bytes per level with totals and recommendations."""
    selected = _parse_levels(levels)
    try:
        return await manager.get_cache_size(selected)
    except Exception as e:
        logger.error("Failed to get cache size", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get cache size: {str(e)}")


@router.get("/hit-ratio", response_model=HitRatioResponse)
async def get_hit_ratio(
    levels: Optional[List[str]] = Query(None, description="Levels to include"),
    manager: CacheManager = Depends(get_cache_manager),
):
    selected = _parse_levels(levels)
    return HitRatioResponse(
        hit_ratio=manager.get_hit_ratio(selected),
        levels=[level.value for level in (selected or CacheLevel.ordered())],
    )


# Configuration endpoints
@router.get("/configuration")
async def get_configuration(manager: CacheManager = Depends(get_cache_manager)):
    return manager.get_configuration()


@router.put("/configuration")
async def update_configuration(
    request: ConfigurationUpdateRequest,
    manager: CacheManager = Depends(get_cache_manager),
):
    """
    Update the runtime cache configuration.

    The change is validated as a whole; an invalid update leaves the
    configuration untouched.
    """
    success = await manager.update_configuration(request.changes)
    if not success:
        logger.warning(
            "Rejected cache configuration update", changes=list(request.changes)
        )
        raise HTTPException(status_code=422, detail="Invalid cache configuration update")

    logger.info("Cache configuration updated", changes=list(request.changes))
    return {"success": True, "configuration": manager.get_configuration()}


@router.post("/levels/{level}")
async def toggle_level(
    request: LevelToggleRequest,
    level: str = Path(..., description="Cache level: request, memory, database"),
    manager: CacheManager = Depends(get_cache_manager),
):
    try:
        cache_level = CacheLevel.coerce(level)
    except CacheException as e:
        raise CacheHTTPException(e, status_code=400)

    if not manager.toggle_level(cache_level, request.enabled):
        raise HTTPException(
            status_code=404, detail=f"Cache level {level} is not available"
        )

    logger.info("Cache level toggled", level=cache_level.value, enabled=request.enabled)
    return {
        "level": cache_level.value,
        "enabled": request.enabled,
        "enabled_levels": [item.value for item in manager.get_enabled_levels()],
    }


# Validation endpoints
@router.post("/validate/performance")
async def validate_performance(
    request: PerformanceValidationRequest = PerformanceValidationRequest(),
    manager: CacheManager = Depends(get_cache_manager),
):
    """Run latency, throughput and hit ratio validation."""
    report = await manager.validate_performance(request.duration_seconds)
    logger.info("Cache performance validated", overall_status=report["overall_status"])
    return report


@router.post("/validate/capacity")
async def validate_capacity(manager: CacheManager = Depends(get_cache_manager)):
    return await manager.validate_cache_capacity()


@router.post("/validate/concurrency")
async def validate_concurrency(
    request: ConcurrencyValidationRequest = ConcurrencyValidationRequest(),
    manager: CacheManager = Depends(get_cache_manager),
):
    report = await manager.validate_concurrent_operations(
        request.target_rpm, request.duration_seconds
    )
    logger.info(
        "Cache concurrency validated",
        overall_status=report["overall_status"],
        target_rpm=report.get("summary", {}).get("target_rpm"),
    )
    return report


@router.post("/capacity/manage")
async def manage_capacity(manager: CacheManager = Depends(get_cache_manager)):
    """Purge or evict entries depending on current capacity usage."""
    report = await manager.manage_capacity()
    logger.info(
        "Cache capacity managed",
        success=report.get("success"),
        actions=report.get("actions_taken", []),
    )
    return report


# Maintenance endpoints
@router.post("/maintenance")
async def run_maintenance(
    request: MaintenanceRequest = MaintenanceRequest(),
    manager: CacheManager = Depends(get_cache_manager),
):
    results = await manager.maintenance(request.operations)
    logger.info("Cache maintenance requested", results=results)
    return results


@router.get("/metrics", response_class=PlainTextResponse)
async def get_prometheus_metrics(manager: CacheManager = Depends(get_cache_manager)):
    """Get cache metrics in Prometheus exposition format."""
    try:
        return PlainTextResponse(manager.export_metrics())
    except Exception as e:
        logger.error("Failed to export cache metrics", error=str(e))
        raise HTTPException(
            status_code=500, detail=f"Failed to export cache metrics: {str(e)}"
        )
