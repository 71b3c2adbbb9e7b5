import asyncio
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from models.database import init_database
from api.routes_geo_intel import router as geo_intel_router
from services.geo_intel.engine import build_sql_engine
from utils.clock import utcnow
from utils.logger import setup_logging, get_logger

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Geo Intelligence engine...")

    await init_database()
    logger.info("Database initialized")

    engine = build_sql_engine()
    app.state.geo_intel_engine = engine
    try:
        if settings.GEO_INTEL_ENABLED:
            await engine.start()
            logger.info("Geo-intel engine ready", sources=len(engine.sources()))
        else:
            logger.info("Geo-intel scheduling disabled; serving on-demand only")
        yield
    finally:
        logger.info("Shutting down...")
        try:
            await engine.aclose()
        except asyncio.CancelledError:
            pass
        app.state.geo_intel_engine = None
        logger.info("Shutdown complete")


app = FastAPI(
    title="Geo Intelligence",
    description="Geospatial signal correlation, country instability and strategic risk",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(geo_intel_router, prefix="/api", tags=["Geo Intelligence"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness check - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        # Single worker: the engine holds in-process signal buffers and scores.
        timeout_keep_alive=30,
    )
