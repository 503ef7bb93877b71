"""
API routes module.
"""

from kvqueue.api.routes.admin import router as admin_router
from kvqueue.api.routes.drain import router as drain_router
from kvqueue.api.routes.health import router as health_router
from kvqueue.api.routes.jobs import router as jobs_router
from kvqueue.api.routes.maintenance import router as maintenance_router

__all__ = [
    "jobs_router",
    "drain_router",
    "maintenance_router",
    "admin_router",
    "health_router",
]
