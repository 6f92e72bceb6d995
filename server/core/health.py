"""Health check utilities for worker monitoring.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from core.config import Settings
    from core.backend import StateBackend
    from services.execution import Worker

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def get_health_status(
    backend: "StateBackend",
    worker: "Worker",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, backend connectivity and worker counters.
    """
    backend_healthy = await backend.ping()
    worker_healthy = worker.is_running or not settings.worker_enabled

    overall_status = "healthy" if (backend_healthy and worker_healthy) else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "backend": backend_healthy,
            "worker": worker_healthy,
        },
        "backend": backend.describe(),
        "worker": worker.stats,
        "features": {
            "redis": settings.redis_enabled,
            "dlq": settings.dlq_enabled,
            "worker": settings.worker_enabled,
        },
    }
