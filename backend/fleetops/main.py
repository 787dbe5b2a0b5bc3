"""Fleet trip corrections API"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fleetops.core.config import get_settings
from fleetops.core.logging import configure_logging, logger
from fleetops.routers import corrections


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.normalized_log_format())
    logger.info(
        "Trip corrections API starting",
        version="0.1.0",
        trips_db_path=settings.trips_db_path,
    )
    yield
    logger.info("Trip corrections API shutting down")


app = FastAPI(
    title="Fleet Trip Corrections API",
    description="Odometer correction cascades, km/l recalculation, and correction history for fleet trips",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(corrections.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": get_settings().app_name,
        "version": "0.1.0",
        "endpoints": {
            "corrections": "/corrections",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
