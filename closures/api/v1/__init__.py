"""
API v1 package.

Exports the main API router that aggregates all v1 endpoints.
"""

from fastapi import APIRouter

from closures.api.v1.endpoints import closures, descriptions, registry

# Create the main v1 router
api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(descriptions.router)
api_router.include_router(closures.router)
api_router.include_router(registry.router)

__all__ = ["api_router"]
