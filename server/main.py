"""
FastAPI entry point for the DAG worker.

Hosts the queue worker inside the application lifespan and exposes workflow
submission, status and health routes.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import workflow
from services.execution import load_job_modules

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    settings = container.settings()
    logger.info("Starting DAG worker")
    set_startup_time()

    await container.backend().startup()

    # Handler modules register themselves on import
    load_job_modules(settings.job_modules)

    worker = container.worker()
    if settings.worker_enabled:
        await worker.start()

    logger.info("Services started successfully",
                backend=container.backend().describe()["backend"],
                job_classes=container.registry().list(),
                worker_enabled=settings.worker_enabled)
    yield

    # Shutdown
    # Worker stops before the backend closes
    if worker.is_running:
        await worker.stop()
    await container.backend().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="DAG Worker",
    version="1.0.0",
    description="Distributed DAG job execution and advancement",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Include routers
app.include_router(workflow.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    settings = container.settings()
    health = await get_health_status(container.backend(), container.worker(), settings)
    health["environment"] = "development" if settings.debug else "production"
    health["timestamp"] = datetime.now().isoformat()
    return health


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting DAG worker",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
