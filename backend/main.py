"""
FastAPI application entry point for the provisioning analysis engine.

Serves the expiration monitor, package change analytics, ghost account
and audit trail views over the snapshot store. Set ENABLE_CAPTURE_WORKER
to run the periodic capture inside the API process instead of as a
separate worker.
"""

import asyncio
import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from provisioning_ops.api.dependencies.engine import get_analysis_engine, reset_analysis_engine
from provisioning_ops.api.routes import analysis_jobs
from provisioning_ops.api.routes import audit_trail
from provisioning_ops.api.routes import expiration_monitor
from provisioning_ops.api.routes import ghost_accounts
from provisioning_ops.api.routes import health
from provisioning_ops.api.routes import package_changes
from provisioning_ops.database.session import init_models

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting provisioning analysis API")

    database_url = os.getenv("DATABASE_URL")
    app.state.database_configured = bool(database_url)
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Analysis endpoints will return 503."
        )
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        try:
            init_models()
        except Exception as e:
            logger.exception("Table creation failed", extra={"error": str(e)})

    worker_task = None
    shutdown_event = asyncio.Event()
    if app.state.database_configured and os.getenv("ENABLE_CAPTURE_WORKER", "false").lower() == "true":
        from provisioning_ops.workers.capture_worker import CAPTURE_INTERVAL_SECONDS, run_loop

        worker_task = asyncio.create_task(
            run_loop(get_analysis_engine(), shutdown_event, CAPTURE_INTERVAL_SECONDS)
        )
        logger.info(
            "Capture worker started in API process",
            extra={"interval_seconds": CAPTURE_INTERVAL_SECONDS},
        )

    yield

    # Shutdown
    logger.info("Shutting down provisioning analysis API")
    if worker_task is not None:
        shutdown_event.set()
        await worker_task
    reset_analysis_engine()


# Create FastAPI app
app = FastAPI(
    title="Provisioning Analysis API",
    description="Entitlement snapshots, expirations, package changes and ghost accounts",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(expiration_monitor.router)
app.include_router(package_changes.router)
app.include_router(ghost_accounts.router)
app.include_router(audit_trail.router)
app.include_router(analysis_jobs.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
