"""
Image Registry API Endpoints.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from closures.api.v1.errors import to_http_exception
from closures.core.container import get_registry_client_dep
from closures.services.registry import RegistryClient, RegistryError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/registry", tags=["Registry"])


@router.get(
    "/repositories",
    response_model=list[Any],
    summary="List Registry Repositories",
    description=(
        "List the repositories of a registry project. With detail=true the "
        "repository records are returned instead of their names."
    ),
    responses={
        400: {"description": "project_id missing"},
        404: {"description": "Project not found"},
        503: {"description": "Registry unavailable"},
    },
)
async def list_repositories(
    registry: str = Query(..., description="Registry base URL"),
    project_id: Optional[str] = Query(default=None, description="Registry project id"),
    detail: bool = Query(default=False, description="Return repository records"),
    registry_client: RegistryClient = Depends(get_registry_client_dep),
) -> list[Any]:
    """List repositories of a registry project."""
    try:
        return await registry_client.list_repositories(registry, project_id, detail=detail)
    except RegistryError as e:
        logger.warning(f"Registry query failed: {e.message}")
        raise to_http_exception(e)
