"""
Mock adapter dispatcher for tests and offline runs.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from closures.core.exceptions import DispatchFailed
from closures.models.closure import TEST_FAILURE_PROPERTY
from closures.models.dispatch import ContainerStats, ExecutionOutcome, ExecutionRequest
from closures.services.dispatch.base import AdapterDispatcher

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Union[dict[str, Any], Awaitable[dict[str, Any]]]]


def echo_handler(inputs: dict[str, Any]) -> dict[str, Any]:
    """Report the inputs back as outputs."""
    return dict(inputs)


class MockAdapterDispatcher(AdapterDispatcher):
    """
    In-process adapter dispatcher.

    Each runtime kind maps to a handler computing outputs from inputs. A
    handler raising is reported as a script error, like a worker would.
    Closures carrying ``closure.test.failure.expected=true`` fail delivery
    with DispatchFailed.

    Attributes:
        dispatched: Requests delivered, in order, with their host.
        cancelled: Execution ids cancelled, in order.
        stats: Stats reported per execution id.
        unreachable_hosts: Hosts that fail every delivery.
        fail_stats: Make fetch_stats fail.
    """

    def __init__(
        self,
        handlers: Optional[dict[str, Handler]] = None,
        delay: float = 0.0,
        unreachable_hosts: Iterable[str] = (),
    ):
        """
        Initialize the dispatcher.

        Args:
            handlers: Runtime kind value to handler. Runtimes without a
                handler echo their inputs.
            delay: Seconds every execution takes.
            unreachable_hosts: Hosts that fail every delivery.
        """
        self._handlers = dict(handlers or {})
        self._delay = delay
        self.unreachable_hosts = set(unreachable_hosts)
        self.dispatched: list[tuple[str, ExecutionRequest]] = []
        self.cancelled: list[str] = []
        self.stats: dict[str, ContainerStats] = {}
        self.fail_stats = False
        self._completed: set[str] = set()

    def set_handler(self, runtime: str, handler: Handler) -> None:
        """Install the handler of a runtime kind."""
        self._handlers[runtime] = handler

    async def dispatch(
        self,
        host_ref: str,
        request: ExecutionRequest,
    ) -> ExecutionOutcome:
        if host_ref in self.unreachable_hosts:
            raise DispatchFailed(f"Adapter {host_ref} is unreachable")
        if str(request.custom_properties.get(TEST_FAILURE_PROPERTY, "")).lower() == "true":
            raise DispatchFailed(f"Simulated adapter failure for {request.execution_id}")

        self.dispatched.append((host_ref, request))
        if self._delay:
            await asyncio.sleep(self._delay)

        handler = self._handlers.get(request.runtime.value, echo_handler)
        try:
            result = handler(dict(request.inputs))
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.debug(f"Handler failed for {request.execution_id}: {e}")
            return ExecutionOutcome(error=f"{type(e).__name__}: {e}")
        finally:
            self._completed.add(request.execution_id)

        return ExecutionOutcome(outputs=result or {}, logs=f"executed {request.execution_id}\n")

    async def fetch_stats(self, host_ref: str, execution_id: str) -> ContainerStats:
        if self.fail_stats:
            raise DispatchFailed(f"Stats of {execution_id} are unavailable")
        stats = self.stats.get(execution_id)
        if stats is not None:
            return stats
        return ContainerStats(
            execution_id=execution_id,
            container_stopped=execution_id in self._completed,
        )

    async def cancel(self, host_ref: str, execution_id: str) -> bool:
        self.cancelled.append(execution_id)
        return True
