"""
Pydantic models for the closure execution service.

This module exports all domain models used in the closure API.
"""

from closures.models.base import ResourceDocument, utcnow
from closures.models.closure import (
    PLACEMENT_PROPERTY,
    TERMINAL_STATES,
    TEST_FAILURE_PROPERTY,
    Closure,
    ClosureExecutionRequest,
    ClosureState,
    CompletionCallback,
)
from closures.models.description import (
    ClosureDescription,
    ResourceConstraints,
    RuntimeKind,
)
from closures.models.dispatch import (
    ContainerStats,
    ExecutionOutcome,
    ExecutionRequest,
)
from closures.models.provisioning import ProvisionPath, ProvisionResult

__all__ = [
    "ResourceDocument",
    "utcnow",
    # Descriptions
    "ClosureDescription",
    "ResourceConstraints",
    "RuntimeKind",
    # Closures
    "PLACEMENT_PROPERTY",
    "TERMINAL_STATES",
    "TEST_FAILURE_PROPERTY",
    "Closure",
    "ClosureExecutionRequest",
    "ClosureState",
    "CompletionCallback",
    # Dispatch
    "ContainerStats",
    "ExecutionOutcome",
    "ExecutionRequest",
    # Provisioning
    "ProvisionPath",
    "ProvisionResult",
]
