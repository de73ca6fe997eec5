"""
API routes module.
"""

from jobdispatch.api.routes.failed import router as failed_router
from jobdispatch.api.routes.health import router as health_router
from jobdispatch.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "failed_router", "health_router"]
