"""
ConvertOS Core - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from convertos.api import agent_router, connections_router, webhooks_router
from convertos.config import settings
from convertos.core.structured_logging import api_log, configure_logging
from convertos.db import async_session_maker, init_db
from convertos.exceptions import ConvertOSError

logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    configure_logging(settings.log_level, settings.structured_logging)
    logger.info("ConvertOS Core starting up...")
    await init_db()
    logger.info("Database initialized")

    if settings.enable_scheduler:
        from convertos.scripts.scheduled_tasks import start_scheduler
        start_scheduler()

    yield

    if settings.enable_scheduler:
        from convertos.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler()

    logger.info("ConvertOS Core shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Webhook ingestion, contact aggregation and an approval-gated ads optimization agent",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConvertOSError)
async def convertos_error_handler(request: Request, exc: ConvertOSError):
    if exc.status_code >= 500:
        api_log.error(exc.message, {"path": request.url.path, "error_code": exc.error_code})
    else:
        api_log.info(exc.message, {"path": request.url.path, "status": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(connections_router, prefix=settings.api_prefix)
app.include_router(agent_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
        "features": ["webhooks", "contacts", "secret_rotation", "ads_agent", "audit_trail"],
    }


@app.get("/health")
async def health():
    """Database probe and uptime."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_status = f"error: {e}"

    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": "1.0.0",
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "scheduler_enabled": settings.enable_scheduler,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("convertos.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
