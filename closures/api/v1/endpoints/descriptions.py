"""
Closure Description API Endpoints.

Provides endpoints for creating, reading and deleting closure descriptions,
one at a time or from a multi-document YAML body.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from pydantic import ValidationError as PydanticValidationError

from closures.api.v1.errors import to_http_exception
from closures.core.container import get_content_service_dep, get_orchestrator_dep
from closures.core.exceptions import ClosureError
from closures.models.description import FACTORY_LINK, ClosureDescription
from closures.services.batch import DescriptionContentService
from closures.services.orchestrator import ClosureOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix=FACTORY_LINK, tags=["Closure Descriptions"])


@router.post(
    "",
    response_model=ClosureDescription,
    status_code=status.HTTP_201_CREATED,
    summary="Create Closure Description",
    responses={
        400: {"description": "Invalid description (e.g. both or neither of source/source_url)"},
        409: {"description": "A description with this link already exists"},
    },
)
async def create_description(
    payload: dict[str, Any] = Body(...),
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> ClosureDescription:
    """Create a closure description."""
    try:
        description = ClosureDescription.model_validate(payload)
    except PydanticValidationError as e:
        logger.warning(f"Invalid closure description: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        return await orchestrator.create_description(description)
    except ClosureError as e:
        raise to_http_exception(e)


@router.post(
    "/content",
    response_model=list[str],
    status_code=status.HTTP_201_CREATED,
    summary="Create Closure Descriptions From YAML",
    description=(
        "Create one closure description per YAML document. Documents are "
        "separated by '---' lines. Either all documents are created or none."
    ),
    responses={
        400: {"description": "Empty body"},
        500: {"description": "At least one document failed; nothing was created"},
    },
)
async def create_descriptions_from_content(
    request: Request,
    content_service: DescriptionContentService = Depends(get_content_service_dep),
) -> list[str]:
    """Create closure descriptions from a multi-document YAML body."""
    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        return await content_service.create_from_content(body)
    except ClosureError as e:
        logger.warning(f"Multi-document creation failed: {e.message}")
        raise to_http_exception(e)


@router.get(
    "",
    response_model=list[ClosureDescription],
    summary="List Closure Descriptions",
)
async def list_descriptions(
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> list[ClosureDescription]:
    """List closure descriptions."""
    return await orchestrator.list_descriptions(limit=limit)


@router.get(
    "/{description_id}",
    response_model=ClosureDescription,
    summary="Get Closure Description",
    responses={404: {"description": "Description not found"}},
)
async def get_description(
    description_id: str,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> ClosureDescription:
    """Get a closure description."""
    try:
        return await orchestrator.get_description(f"{FACTORY_LINK}/{description_id}")
    except ClosureError as e:
        raise to_http_exception(e)


@router.delete(
    "/{description_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Closure Description",
    responses={404: {"description": "Description not found"}},
)
async def delete_description(
    description_id: str,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> Response:
    """Delete a closure description."""
    try:
        await orchestrator.delete_description(f"{FACTORY_LINK}/{description_id}")
    except ClosureError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
