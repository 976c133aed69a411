"""
Adapter dispatcher interface and host selection.

A dispatcher delivers an ExecutionRequest to the adapter running on a
compute host and awaits its completion. Awaiting dispatch() is the single
completion of one execution; there is exactly one delivery attempt.
"""

import zlib
from abc import ABC, abstractmethod
from typing import Optional

from closures.core.exceptions import DispatchFailed
from closures.models.closure import PLACEMENT_PROPERTY
from closures.models.dispatch import ContainerStats, ExecutionOutcome, ExecutionRequest


class AdapterDispatcher(ABC):
    """Abstract base class for adapter dispatchers."""

    @abstractmethod
    async def dispatch(
        self,
        host_ref: str,
        request: ExecutionRequest,
    ) -> ExecutionOutcome:
        """
        Deliver an execution request and wait for its completion.

        Args:
            host_ref: Compute host adapter to deliver to.
            request: The execution request.

        Returns:
            ExecutionOutcome reported by the worker. A worker-side script
            error is an outcome with ``error`` set, not an exception.

        Raises:
            DispatchFailed: If the adapter is unreachable or rejected the request.
        """
        ...

    @abstractmethod
    async def fetch_stats(self, host_ref: str, execution_id: str) -> ContainerStats:
        """
        Fetch resource usage of an execution.

        Raises:
            DispatchFailed: If the adapter cannot be queried.
        """
        ...

    @abstractmethod
    async def cancel(self, host_ref: str, execution_id: str) -> bool:
        """
        Ask the adapter to stop an execution. Best effort.

        Returns:
            True if the adapter accepted the cancellation.
        """
        ...

    async def close(self) -> None:
        """Release resources held by the dispatcher."""


def resolve_placement(
    closure_properties: Optional[dict[str, str]],
    description_properties: Optional[dict[str, str]],
    default_placement: str,
) -> str:
    """
    Resolve the resource placement of an execution.

    The closure's ``closure.placement`` property wins over the
    description's, which wins over the configured default.
    """
    for properties in (closure_properties, description_properties):
        if properties and properties.get(PLACEMENT_PROPERTY):
            return properties[PLACEMENT_PROPERTY]
    return default_placement


def select_host(placement: str, closure_link: str, hosts: dict[str, list[str]]) -> str:
    """
    Pick the compute host of a placement for a closure.

    The choice is a stable hash of the closure link, so the same closure
    always lands on the same host of a placement.

    Raises:
        DispatchFailed: If the placement has no compute hosts.
    """
    candidates = hosts.get(placement)
    if not candidates:
        raise DispatchFailed(f"No compute hosts available for placement {placement}")
    index = zlib.crc32(closure_link.encode("utf-8")) % len(candidates)
    return candidates[index]
