from fastapi import FastAPI, Depends
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import logging

from .config import settings
from .deps import Services, build_services, get_services
from .schemas import HealthResponse
from .api.resize import router as resize_router
from .api.config import router as config_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting image resize service...")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        app.state.services.eviction.start()

        yield

        # Shutdown
        logger.info("Shutting down...")
        app.state.services.close()

    app = FastAPI(
        title="Image Resize Proxy",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(resize_router)
    app.include_router(config_router)

    @app.get("/health", response_model=HealthResponse)
    def health_check(services: Services = Depends(get_services)):
        """Health check endpoint"""
        checks = {}

        for name, engine in (("cache_db", services.cache_engine), ("referer_db", services.referer_engine)):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                checks[name] = "healthy"
            except SQLAlchemyError as e:
                logger.error(f"Health check failed for {name}: {e}")
                checks[name] = "unhealthy"

        checks["eviction"] = services.eviction.state.value
        checks["scheduler"] = "running" if services.eviction.is_running else "stopped"

        status = "healthy" if all(checks[name] == "healthy" for name in ("cache_db", "referer_db")) else "degraded"
        return HealthResponse(status=status, timestamp=datetime.now(timezone.utc), services=checks)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("image_resize.main:app", host="0.0.0.0", port=settings.port)
