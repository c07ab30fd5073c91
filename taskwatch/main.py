"""Main FastAPI application for the Taskwatch routines backend."""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskwatch import __version__
from taskwatch.config import get_settings
from taskwatch.db.init import init_db
from taskwatch.errors import RoutineError, create_error_response
from taskwatch.middleware.cors import add_cors_middleware
from taskwatch.routers import routines_router
from taskwatch.utils.logger import configure_logging
from taskwatch.utils.metrics import metrics_collector

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


# Create FastAPI application
app = FastAPI(
    title="Taskwatch Routines API",
    description="Repeating session rules, occurrence guides and their sync",
    version=__version__,
)

# Add CORS middleware
add_cors_middleware(app, settings)


@app.exception_handler(RoutineError)
async def routine_error_handler(request: Request, exc: RoutineError):
    """Render routine errors in the standard error envelope."""
    return JSONResponse(
        status_code=exc.http_status,
        content=create_error_response(exc),
    )


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    init_db()
    logger.info("[SUCCESS] Application startup complete.")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/metrics")
async def metrics():
    """In-process routine counters and timers."""
    return metrics_collector.get_metrics()


# Routine endpoints: /api/{user_id}/routines
app.include_router(routines_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
