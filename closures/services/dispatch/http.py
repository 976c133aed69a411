"""
HTTP adapter dispatcher.

Delivers execution requests to the adapter service of a compute host:

    POST {host}/closures/executions              -> ExecutionOutcome
    GET  {host}/closures/stats?id={execution_id} -> ContainerStats
    POST {host}/closures/executions/{id}/cancel
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from closures.core.exceptions import DispatchFailed
from closures.models.dispatch import ContainerStats, ExecutionOutcome, ExecutionRequest
from closures.services.dispatch.base import AdapterDispatcher

logger = logging.getLogger(__name__)


class HttpAdapterDispatcher(AdapterDispatcher):
    """
    Adapter dispatcher over HTTP.

    The execution request is held open until the adapter reports
    completion; its timeout is the closure timeout plus a grace period.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        request_grace_seconds: float = 5.0,
        control_timeout: float = 10.0,
    ):
        """
        Initialize the dispatcher.

        Args:
            http_client: Shared HTTP client. If None, one is created and
                owned by this instance.
            request_grace_seconds: Extra seconds granted beyond the closure timeout.
            control_timeout: Timeout of stats and cancel requests.
        """
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self._grace = request_grace_seconds
        self._control_timeout = control_timeout

    async def dispatch(
        self,
        host_ref: str,
        request: ExecutionRequest,
    ) -> ExecutionOutcome:
        url = f"{host_ref.rstrip('/')}/closures/executions"
        timeout = request.resources.timeout_seconds + self._grace
        logger.info(f"Dispatching execution {request.execution_id} to {host_ref}")

        try:
            response = await self._http_client.post(
                url,
                json=request.model_dump(mode="json"),
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise DispatchFailed(f"Adapter {host_ref} is unreachable: {e}") from e

        if not response.is_success:
            raise DispatchFailed(
                f"Adapter {host_ref} rejected execution {request.execution_id}: "
                f"{response.status_code} {response.text}"
            )

        try:
            return ExecutionOutcome.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise DispatchFailed(f"Adapter {host_ref} sent an invalid completion: {e}") from e

    async def fetch_stats(self, host_ref: str, execution_id: str) -> ContainerStats:
        url = f"{host_ref.rstrip('/')}/closures/stats"
        try:
            response = await self._http_client.get(
                url,
                params={"id": execution_id},
                timeout=self._control_timeout,
            )
            response.raise_for_status()
            stats = ContainerStats.model_validate(response.json())
        except httpx.HTTPError as e:
            raise DispatchFailed(f"Failed to fetch stats from {host_ref}: {e}") from e
        except (ValueError, PydanticValidationError) as e:
            raise DispatchFailed(f"Adapter {host_ref} sent invalid stats: {e}") from e

        if stats.execution_id is None:
            stats = stats.model_copy(update={"execution_id": execution_id})
        return stats

    async def cancel(self, host_ref: str, execution_id: str) -> bool:
        url = f"{host_ref.rstrip('/')}/closures/executions/{execution_id}/cancel"
        try:
            response = await self._http_client.post(url, timeout=self._control_timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to cancel execution {execution_id} on {host_ref}: {e}")
            return False
        return response.is_success

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
