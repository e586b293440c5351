"""
tiercache - Monitoring Application

FastAPI application exposing the cache monitoring endpoints. The lifespan
initializes the cache manager's store connections and closes them on
shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import structlog

from .api.endpoints.cache_monitoring import router as cache_monitoring_router
from .services.cache.cache_manager import CacheManager, get_cache_manager

logger = structlog.get_logger()


def create_app(manager: Optional[CacheManager] = None) -> FastAPI:
    """Build the monitoring app, optionally around an existing manager."""
    cache_manager = manager or get_cache_manager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting tiercache monitoring API")
        try:
            await cache_manager.initialize()
        except Exception as e:
            logger.error("Cache manager initialization failed", error=str(e))
            raise

        yield

        logger.info("Shutting down tiercache monitoring API")
        await cache_manager.close()

    app = FastAPI(
        title="tiercache",
        description="Multi-level cache monitoring API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(cache_monitoring_router)
    if manager is not None:
        app.dependency_overrides[get_cache_manager] = lambda: manager
    return app
