"""Compass Assessment Engine - Main Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from compass.api.routes import assessments_router, environments_router, usage_router
from compass.api.services.orchestrator import get_orchestrator
from compass.core.config import get_settings
from compass.core.database import SessionLocal, init_db
from compass.core.scheduler import get_scheduler, init_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Compass Assessment Engine...")

    init_db()
    logger.info("Database initialized")

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = init_scheduler()
        scheduler.start()
        logger.info("Background scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler is not None:
        scheduler.shutdown()
    await get_orchestrator().shutdown()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Governance assessments of Azure environments: naming conventions, "
                "tagging coverage and remediation recommendations.",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(assessments_router)
app.include_router(environments_router)
app.include_router(usage_router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/detailed")
async def detailed_health_check():
    """Detailed health check with component status."""
    components = {
        "database": "unknown",
        "scheduler": "unknown",
        "platform_credential_configured": settings.has_platform_service_principal,
        "credential_store": settings.credential_store,
    }

    # Check database
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        components["database"] = "healthy"
    except SQLAlchemyError as e:
        components["database"] = f"unhealthy: {e}"

    # Check scheduler
    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        components["scheduler"] = "running"
    else:
        components["scheduler"] = "not_running" if settings.scheduler_enabled else "disabled"

    healthy = components["database"] == "healthy" and components["scheduler"] != "not_running"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "components": components,
        "credential_cache": get_orchestrator().vault.get_cache_stats(),
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "compass.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
