"""
Closure API Endpoints.

Provides endpoints for creating, executing, inspecting and cancelling
closures, and for compute host adapters to report completion.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from closures.api.v1.errors import to_http_exception
from closures.core.container import get_orchestrator_dep
from closures.core.exceptions import ClosureError
from closures.models.closure import (
    FACTORY_LINK,
    Closure,
    ClosureExecutionRequest,
    ClosureState,
    CompletionCallback,
)
from closures.models.dispatch import ContainerStats
from closures.services.orchestrator import ClosureOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix=FACTORY_LINK, tags=["Closures"])


class CompletionResponse(BaseModel):
    """
    Response model for completion callbacks.

    Attributes:
        applied: Whether the completion changed the closure.
    """

    applied: bool = Field(..., description="Whether the completion was applied")


def _closure_link(closure_id: str) -> str:
    return f"{FACTORY_LINK}/{closure_id}"


@router.post(
    "",
    response_model=Closure,
    status_code=status.HTTP_201_CREATED,
    summary="Create Closure",
    responses={
        400: {"description": "Invalid closure"},
        404: {"description": "Closure description not found"},
        409: {"description": "A closure with this link already exists"},
    },
)
async def create_closure(
    payload: dict[str, Any] = Body(...),
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> Closure:
    """Create a closure in state CREATED."""
    try:
        closure = Closure.model_validate(payload)
    except PydanticValidationError as e:
        logger.warning(f"Invalid closure: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        return await orchestrator.create_closure(closure)
    except ClosureError as e:
        raise to_http_exception(e)


@router.post(
    "/{closure_id}",
    response_model=Closure,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Execute Closure",
    description=(
        "Bind inputs and start executing the closure. Returns the STARTED "
        "closure immediately; poll GET for the outcome."
    ),
    responses={
        400: {"description": "Closure not CREATED, or its description is gone"},
        404: {"description": "Closure not found"},
    },
)
async def execute_closure(
    closure_id: str,
    payload: Optional[dict[str, Any]] = Body(default=None),
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> Closure:
    """
    Execute a closure.

    Args:
        closure_id: The closure id.
        payload: Body of the form {"inputs": {...}}.
        orchestrator: ClosureOrchestrator dependency.

    Returns:
        The closure in state STARTED.
    """
    try:
        request = ClosureExecutionRequest.model_validate(payload or {})
    except PydanticValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        return await orchestrator.execute(_closure_link(closure_id), request.inputs)
    except ClosureError as e:
        logger.warning(f"Failed to execute closure {closure_id}: {e.message}")
        raise to_http_exception(e)


@router.get(
    "",
    response_model=list[Closure],
    summary="List Closures",
)
async def list_closures(
    state: Optional[ClosureState] = Query(default=None, description="Filter by state"),
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> list[Closure]:
    """List closures, optionally filtered by state."""
    return await orchestrator.list_closures(state=state, limit=limit)


@router.get(
    "/{closure_id}",
    response_model=Closure,
    summary="Get Closure",
    responses={404: {"description": "Closure not found"}},
)
async def get_closure(
    closure_id: str,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> Closure:
    """Get the full closure document."""
    try:
        return await orchestrator.get_closure(_closure_link(closure_id))
    except ClosureError as e:
        raise to_http_exception(e)


@router.delete(
    "/{closure_id}",
    response_model=Closure,
    summary="Delete Closure",
    description="Cancel the closure if it is still running, then delete it.",
    responses={404: {"description": "Closure not found"}},
)
async def delete_closure(
    closure_id: str,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> Closure:
    """Cancel and delete a closure."""
    try:
        return await orchestrator.delete_closure(_closure_link(closure_id))
    except ClosureError as e:
        raise to_http_exception(e)


@router.patch(
    "/{closure_id}/completion",
    response_model=CompletionResponse,
    summary="Report Closure Completion",
    description=(
        "Called by compute host adapters. Completions for closures that are "
        "not STARTED, or for another execution, are ignored."
    ),
    responses={404: {"description": "Closure not found"}},
)
async def complete_closure(
    closure_id: str,
    callback: CompletionCallback,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> CompletionResponse:
    """Apply a completion callback."""
    try:
        applied = await orchestrator.complete(_closure_link(closure_id), callback)
    except ClosureError as e:
        raise to_http_exception(e)
    return CompletionResponse(applied=applied)


@router.get(
    "/{closure_id}/stats",
    response_model=ContainerStats,
    summary="Get Closure Container Stats",
    responses={
        400: {"description": "Closure was never dispatched"},
        404: {"description": "Closure not found"},
    },
)
async def get_closure_stats(
    closure_id: str,
    orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
) -> ContainerStats:
    """Get resource usage of the container running the closure."""
    try:
        return await orchestrator.fetch_stats(_closure_link(closure_id))
    except ClosureError as e:
        raise to_http_exception(e)
