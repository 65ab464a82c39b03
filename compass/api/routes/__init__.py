"""API routes module."""

from compass.api.routes.assessments import router as assessments_router
from compass.api.routes.environments import router as environments_router
from compass.api.routes.usage import router as usage_router

__all__ = [
    "assessments_router",
    "environments_router",
    "usage_router",
]
