"""
Closure task orchestrator.

Drives every closure through its lifecycle:

    CREATED -> STARTED      execute(): inputs bound, run task spawned
    STARTED -> FINISHED     worker completed, outputs stored
    STARTED -> FAILED       provisioning, dispatch, worker error or timeout
    non-terminal -> CANCELLED   delete_closure()

Every transition is a versioned write to the resource store, so the first
terminal write wins and later ones are no-ops.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from closures.core.config import Settings, get_settings
from closures.core.exceptions import (
    ClosureError,
    DispatchFailed,
    DocumentNotFoundError,
    NotFoundError,
    StaleVersionError,
    TimeoutExceeded,
    ValidationError,
)
from closures.models.closure import FACTORY_LINK as CLOSURE_FACTORY_LINK
from closures.models.closure import (
    Closure,
    ClosureState,
    CompletionCallback,
)
from closures.models.description import FACTORY_LINK as DESCRIPTION_FACTORY_LINK
from closures.models.description import ClosureDescription
from closures.models.dispatch import ContainerStats, ExecutionOutcome, ExecutionRequest
from closures.services.dispatch.base import AdapterDispatcher, resolve_placement, select_host
from closures.services.provisioning.provisioner import ImageProvisioner
from closures.services.store import ResourceStore

logger = logging.getLogger(__name__)


class _Abandoned(Exception):
    """The closure left STARTED while its run was in progress."""


@dataclass
class _RunContext:
    """Progress of one background run."""

    link: str
    image_ref: Optional[str] = None
    image_persisted: bool = False
    host_ref: Optional[str] = None
    execution_id: Optional[str] = None


class ClosureOrchestrator:
    """
    Closure task orchestrator.

    Provides a high-level interface for:
    - Creating, listing and deleting closure descriptions
    - Creating closures and executing them asynchronously
    - Accepting completion callbacks from compute host adapters
    - Cancelling closures and reclaiming their images

    Usage:
        orchestrator = ClosureOrchestrator(store, provisioner, dispatcher)
        description = await orchestrator.create_description(description)
        closure = await orchestrator.create_closure(
            Closure(description_link=description.document_self_link)
        )
        await orchestrator.execute(closure.document_self_link, {"a": 3})
        done = await orchestrator.wait_for_completion(closure.document_self_link)
    """

    def __init__(
        self,
        store: ResourceStore,
        provisioner: ImageProvisioner,
        dispatcher: AdapterDispatcher,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Resource store holding descriptions and closures.
            provisioner: Makes runtime images available.
            dispatcher: Delivers executions to compute host adapters.
            settings: Application settings. If None, loads from config.
        """
        self._store = store
        self._provisioner = provisioner
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def store(self) -> ResourceStore:
        """Get the resource store."""
        return self._store

    @property
    def provisioner(self) -> ImageProvisioner:
        """Get the image provisioner."""
        return self._provisioner

    @property
    def dispatcher(self) -> AdapterDispatcher:
        """Get the adapter dispatcher."""
        return self._dispatcher

    @property
    def running_count(self) -> int:
        """Get the number of in-flight runs."""
        return len(self._tasks)

    # =========================================================================
    # Closure descriptions
    # =========================================================================

    async def create_description(
        self, description: ClosureDescription
    ) -> ClosureDescription:
        """
        Persist a new closure description.

        A self link chosen by the client is honoured (its last segment is
        used as id under the description factory).

        Raises:
            DocumentExistsError: If the link is already taken.
        """
        document = description.model_copy(deep=True)
        document.document_self_link = _child_link(
            DESCRIPTION_FACTORY_LINK, description.document_self_link
        )
        created = await self._store.create(document)
        logger.info(f"Created closure description {created.document_self_link}")
        return created

    async def get_description(self, link: str) -> ClosureDescription:
        """
        Retrieve a closure description.

        Raises:
            NotFoundError: If the description does not exist.
        """
        return await self._store.get(link)

    async def list_descriptions(self, limit: int = 100) -> list[ClosureDescription]:
        """List closure descriptions."""
        return await self._store.list(DESCRIPTION_FACTORY_LINK, limit=limit)

    async def delete_description(self, link: str) -> None:
        """
        Delete a closure description.

        Closures created from it keep running; executing them later fails
        validation.

        Raises:
            NotFoundError: If the description does not exist.
        """
        if not await self._store.delete(link):
            raise NotFoundError(link)
        logger.info(f"Deleted closure description {link}")

    # =========================================================================
    # Closures
    # =========================================================================

    async def create_closure(self, closure: Closure) -> Closure:
        """
        Persist a new closure in state CREATED.

        Any state, outputs or execution bookkeeping supplied by the client
        is discarded.

        Raises:
            NotFoundError: If the referenced description does not exist.
        """
        if await self._find_description(closure.description_link) is None:
            raise NotFoundError(
                closure.description_link,
                f"Closure description not found: {closure.description_link}",
            )

        document = Closure(
            document_self_link=_child_link(
                CLOSURE_FACTORY_LINK, closure.document_self_link
            ),
            description_link=closure.description_link,
            inputs=dict(closure.inputs),
            custom_properties=dict(closure.custom_properties),
        )
        created = await self._store.create(document)
        logger.info(f"Created closure {created.document_self_link}")
        return created

    async def get_closure(self, link: str) -> Closure:
        """
        Retrieve a closure.

        Raises:
            NotFoundError: If the closure does not exist.
        """
        return await self._store.get(link)

    async def list_closures(
        self,
        state: Optional[ClosureState] = None,
        limit: int = 100,
    ) -> list[Closure]:
        """List closures, optionally filtered by state."""
        def in_state(document: Closure) -> bool:
            return document.state == state

        predicate = in_state if state is not None else None
        return await self._store.list(CLOSURE_FACTORY_LINK, predicate, limit)

    async def execute(self, link: str, inputs: Optional[dict[str, Any]] = None) -> Closure:
        """
        Start executing a closure.

        Binds the inputs, moves the closure CREATED -> STARTED and spawns
        the background run. Returns the STARTED snapshot without waiting
        for the execution.

        Args:
            link: Closure link.
            inputs: Input values; override inputs given at creation.

        Returns:
            The closure in state STARTED.

        Raises:
            NotFoundError: If the closure does not exist.
            ValidationError: If the closure is not CREATED, its description
                is gone, or another request started it first.
        """
        closure = await self._store.get_or_none(link)
        if closure is None:
            raise NotFoundError(link)
        if closure.state != ClosureState.CREATED:
            raise ValidationError(
                f"Closure {link} cannot be executed in state {closure.state.value}"
            )

        description = await self._find_description(closure.description_link)
        if description is None:
            raise ValidationError(
                f"Closure description {closure.description_link} is not available"
            )

        provided = {**closure.inputs, **(inputs or {})}
        expected_version = closure.document_version
        closure.mark_started(_bind_inputs(description, provided))

        try:
            started = await self._store.update(closure, expected_version=expected_version)
        except StaleVersionError:
            raise ValidationError(f"Closure {link} was modified concurrently") from None
        except DocumentNotFoundError:
            raise NotFoundError(link) from None

        logger.info(f"Closure {link} STARTED")
        task = asyncio.create_task(self._run(started, description))
        self._tasks[link] = task
        task.add_done_callback(lambda t: self._forget_task(link, t))
        return started

    def _forget_task(self, link: str, task: asyncio.Task) -> None:
        if self._tasks.get(link) is task:
            del self._tasks[link]

    async def _find_description(self, link: str) -> Optional[ClosureDescription]:
        document = await self._store.get_or_none(link)
        if not isinstance(document, ClosureDescription):
            return None
        return document

    async def _run(self, closure: Closure, description: ClosureDescription) -> None:
        """Background run of one execution, bounded by the closure timeout."""
        ctx = _RunContext(link=closure.document_self_link)
        timeout = None

        try:
            try:
                timeout = description.resources.timeout_seconds
                outcome = await asyncio.wait_for(
                    self._provision_and_dispatch(closure, description, ctx),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Closure {ctx.link} timed out after {timeout}s")
                await self._finalize(ctx.link, lambda c: c.mark_failed(TimeoutExceeded().message))
                if ctx.host_ref and ctx.execution_id:
                    self._cancel_in_background(ctx.host_ref, ctx.execution_id)
                return
            except _Abandoned:
                logger.info(f"Closure {ctx.link} left STARTED, abandoning its run")
                return
            except ClosureError as e:
                logger.warning(f"Closure {ctx.link} failed: {e.message}")
                await self._finalize(ctx.link, lambda c: c.mark_failed(e.message))
                return
            except Exception as e:
                logger.exception(f"Closure {ctx.link} failed with exception")
                await self._finalize(ctx.link, lambda c: c.mark_failed(f"Unexpected error: {e}"))
                return

            await self._apply_outcome(ctx.link, outcome, description.output_names)

        finally:
            if ctx.image_ref and not ctx.image_persisted:
                await self._provisioner.release(ctx.image_ref)

    async def _provision_and_dispatch(
        self,
        closure: Closure,
        description: ClosureDescription,
        ctx: _RunContext,
    ) -> ExecutionOutcome:
        labels = {**description.custom_properties, **closure.custom_properties}

        result = await self._provisioner.provision(
            description.runtime,
            source_url=description.source_url,
            labels=labels,
        )
        ctx.image_ref = result.image_ref
        if not await self._patch(ctx.link, {"image_ref": result.image_ref}):
            raise _Abandoned()
        ctx.image_persisted = True

        dispatch_config = self._settings.dispatch
        placement = resolve_placement(
            closure.custom_properties,
            description.custom_properties,
            dispatch_config.default_placement,
        )
        host_ref = select_host(placement, ctx.link, dispatch_config.hosts)
        execution_id = uuid.uuid4().hex

        request = ExecutionRequest(
            execution_id=execution_id,
            closure_link=ctx.link,
            runtime=description.runtime,
            source=description.source,
            source_url=description.source_url,
            entrypoint=description.entrypoint,
            image_ref=result.image_ref,
            inputs=closure.inputs,
            output_names=description.output_names,
            placement=placement,
            resources=description.resources,
            custom_properties=labels,
        )

        if not await self._patch(
            ctx.link, {"host_ref": host_ref, "execution_id": execution_id}
        ):
            raise _Abandoned()
        ctx.host_ref = host_ref
        ctx.execution_id = execution_id

        logger.info(f"Dispatching closure {ctx.link} to {host_ref} ({placement})")
        return await self._dispatcher.dispatch(host_ref, request)

    async def _apply_outcome(
        self,
        link: str,
        outcome: ExecutionOutcome,
        output_names: list[str],
        execution_id: Optional[str] = None,
    ) -> bool:
        if outcome.success:
            outputs = _filter_outputs(outcome.outputs, output_names)
            applied = await self._finalize(
                link, lambda c: c.mark_finished(outputs, outcome.logs), execution_id
            )
            if applied:
                logger.info(f"Closure {link} FINISHED")
        else:
            applied = await self._finalize(
                link, lambda c: c.mark_failed(outcome.error, outcome.logs), execution_id
            )
            if applied:
                logger.info(f"Closure {link} FAILED: {outcome.error}")
        return applied

    async def complete(self, link: str, callback: CompletionCallback) -> bool:
        """
        Apply a completion reported by a compute host adapter.

        Only a STARTED closure whose execution id matches accepts the
        completion; anything else is ignored.

        Returns:
            True if the completion was applied.

        Raises:
            NotFoundError: If the closure does not exist.
        """
        closure = await self._store.get_or_none(link)
        if closure is None:
            raise NotFoundError(link)
        if (
            closure.state != ClosureState.STARTED
            or closure.execution_id != callback.execution_id
        ):
            logger.debug(
                f"Ignoring completion {callback.execution_id} for closure {link} "
                f"in state {closure.state.value}"
            )
            return False

        description = await self._store.get_or_none(closure.description_link)
        output_names = description.output_names if description is not None else []
        outcome = ExecutionOutcome(
            outputs=callback.outputs, error=callback.error, logs=callback.logs
        )
        applied = await self._apply_outcome(
            link, outcome, output_names, execution_id=callback.execution_id
        )

        if applied:
            task = self._tasks.get(link)
            if task is not None and not task.done():
                task.cancel()
        return applied

    async def _finalize(
        self,
        link: str,
        mutate: Callable[[Closure], Any],
        execution_id: Optional[str] = None,
    ) -> bool:
        """
        Write a terminal state.

        Re-reads the closure, skips it when missing or already terminal,
        and retries when another writer got in between.

        Returns:
            True if this call wrote the terminal state.
        """
        while True:
            closure = await self._store.get_or_none(link)
            if closure is None or closure.is_terminal:
                logger.debug(f"Skipping finalization of closure {link}")
                return False
            if execution_id is not None and closure.execution_id != execution_id:
                return False

            expected_version = closure.document_version
            mutate(closure)
            try:
                await self._store.update(closure, expected_version=expected_version)
            except StaleVersionError:
                continue
            except DocumentNotFoundError:
                return False
            return True

    async def _patch(
        self,
        link: str,
        fields: dict[str, Any],
        require_started: bool = True,
    ) -> bool:
        """
        Persist bookkeeping fields on a closure.

        Returns:
            False if the closure is gone, or left STARTED when required.
        """
        while True:
            closure = await self._store.get_or_none(link)
            if closure is None:
                return False
            if require_started and closure.state != ClosureState.STARTED:
                return False

            expected_version = closure.document_version
            for name, value in fields.items():
                setattr(closure, name, value)
            try:
                await self._store.update(closure, expected_version=expected_version)
            except StaleVersionError:
                continue
            except DocumentNotFoundError:
                return False
            return True

    async def delete_closure(self, link: str) -> Closure:
        """
        Cancel (if still running) and delete a closure.

        A non-terminal closure is first persisted as CANCELLED, its run is
        stopped, the adapter is asked to stop the execution, and finally
        the document is deleted and its image reference released.

        Returns:
            The last snapshot of the closure.

        Raises:
            NotFoundError: If the closure does not exist.
        """
        closure = await self._store.get_or_none(link)
        if closure is None:
            raise NotFoundError(link)

        was_running = not closure.is_terminal
        if was_running and await self._finalize(link, lambda c: c.mark_cancelled()):
            logger.info(f"Closure {link} CANCELLED")

        task = self._tasks.pop(link, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        latest = await self._store.get_or_none(link) or closure
        if was_running and latest.host_ref and latest.execution_id:
            await self._cancel_remote(latest.host_ref, latest.execution_id)

        await self._store.delete(link)
        await self._provisioner.release(latest.image_ref)
        logger.info(f"Deleted closure {link}")
        return latest

    def _cancel_in_background(self, host_ref: str, execution_id: str) -> None:
        task = asyncio.create_task(self._cancel_remote(host_ref, execution_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_remote(self, host_ref: str, execution_id: str) -> None:
        try:
            cancelled = await self._dispatcher.cancel(host_ref, execution_id)
        except Exception as e:
            logger.warning(f"Failed to cancel execution {execution_id} on {host_ref}: {e}")
            return
        if not cancelled:
            logger.debug(f"Adapter {host_ref} did not cancel execution {execution_id}")

    async def fetch_stats(self, link: str) -> ContainerStats:
        """
        Fetch resource usage of a dispatched closure.

        Falls back to the last stats stored on the closure when the adapter
        cannot be queried.

        Raises:
            NotFoundError: If the closure does not exist.
            ValidationError: If the closure was never dispatched.
            DispatchFailed: If the adapter fails and no stats were stored.
        """
        closure = await self._store.get_or_none(link)
        if closure is None:
            raise NotFoundError(link)
        if not closure.host_ref or not closure.execution_id:
            raise ValidationError(f"Closure {link} has not been dispatched")

        try:
            stats = await self._dispatcher.fetch_stats(closure.host_ref, closure.execution_id)
        except DispatchFailed as e:
            logger.warning(f"Failed to fetch stats of closure {link}: {e.message}")
            if closure.last_stats is not None:
                return closure.last_stats
            raise

        await self._patch(link, {"last_stats": stats}, require_started=False)
        return stats

    async def wait_for_completion(
        self,
        link: str,
        timeout: Optional[float] = None,
    ) -> Closure:
        """
        Wait until a closure reaches a terminal state.

        Args:
            link: Closure link.
            timeout: Seconds to wait. None waits indefinitely.

        Returns:
            The terminal closure.

        Raises:
            NotFoundError: If the closure does not exist or is deleted while waiting.
            TimeoutExceeded: If the closure is still running after timeout.
        """
        queue = self._store.subscribe(link)
        try:
            closure = await self._store.get_or_none(link)
            if closure is None:
                raise NotFoundError(link)
            if closure.is_terminal:
                return closure

            async def _next_terminal() -> Closure:
                while True:
                    snapshot = await queue.get()
                    if snapshot is None:
                        raise NotFoundError(link, f"Closure {link} was deleted")
                    if snapshot.is_terminal:
                        return snapshot

            try:
                return await asyncio.wait_for(_next_terminal(), timeout=timeout)
            except asyncio.TimeoutError:
                raise TimeoutExceeded(
                    f"Closure {link} did not complete within {timeout}s"
                ) from None
        finally:
            self._store.unsubscribe(link, queue)

    async def close(self) -> None:
        """Stop all in-flight runs and pending remote cancellations."""
        tasks = list(self._tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._background.clear()


def _child_link(factory_link: str, requested: Optional[str]) -> str:
    document_id = ""
    if requested:
        document_id = requested.rstrip("/").rsplit("/", 1)[-1]
    return f"{factory_link}/{document_id or uuid.uuid4().hex}"


def _bind_inputs(
    description: ClosureDescription, provided: dict[str, Any]
) -> dict[str, Any]:
    """
    Bind provided inputs to the declared ones.

    With no declared inputs everything provided is kept. Otherwise only
    declared names are kept, and declared non-null defaults fill the gaps.
    """
    declared = description.inputs
    if not declared:
        return dict(provided)

    bound = {name: provided[name] for name in declared if name in provided}
    for name, default in declared.items():
        if name not in bound and default is not None:
            bound[name] = default
    return bound


def _filter_outputs(outputs: dict[str, Any], output_names: list[str]) -> dict[str, Any]:
    if not output_names:
        return dict(outputs)
    return {name: outputs[name] for name in output_names if name in outputs}
