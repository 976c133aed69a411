"""
Unit tests for ClosureOrchestrator.

Drives closures through their lifecycle with the in-memory store, the
in-memory image backend and the mock dispatcher.
"""

import asyncio

import pytest

from closures.core.config import (
    DEFAULT_RESOURCE_PLACEMENT,
    DispatchConfig,
    DispatchProvider,
    ProvisioningConfig,
    ProvisioningProvider,
    Settings,
)
from closures.core.exceptions import (
    DispatchFailed,
    DocumentExistsError,
    NotFoundError,
    TimeoutExceeded,
    ValidationError,
)
from closures.models.closure import (
    PLACEMENT_PROPERTY,
    TEST_FAILURE_PROPERTY,
    Closure,
    ClosureState,
    CompletionCallback,
)
from closures.models.description import ClosureDescription, ResourceConstraints
from closures.services.dispatch.mock import MockAdapterDispatcher
from closures.services.orchestrator import ClosureOrchestrator
from closures.services.provisioning.backend import InMemoryImageBackend
from closures.services.provisioning.provisioner import ImageProvisioner
from closures.services.registry import InMemoryRegistryClient
from closures.services.store import InMemoryResourceStore

NODE_IMAGE = "closures/runtime-nodejs:latest"
EDGE = "/resources/group-placements/edge"


async def _create_closure(
    orchestrator: ClosureOrchestrator,
    description: ClosureDescription,
    **fields,
) -> Closure:
    created = await orchestrator.create_description(description)
    return await orchestrator.create_closure(
        Closure(description_link=created.document_self_link, **fields)
    )


async def _wait_until(store: InMemoryResourceStore, link: str, predicate, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        closure = await store.get(link)
        if predicate(closure):
            return closure
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Condition not met for {link}: state={closure.state}")
        await asyncio.sleep(0.01)


def _orchestrator_with(
    store: InMemoryResourceStore,
    image_backend: InMemoryImageBackend,
    dispatcher: MockAdapterDispatcher,
    settings: Settings,
) -> ClosureOrchestrator:
    provisioner = ImageProvisioner(image_backend, InMemoryRegistryClient(), settings)
    return ClosureOrchestrator(store, provisioner, dispatcher, settings)


class TestDescriptions:
    """Tests for closure description management."""

    @pytest.mark.asyncio
    async def test_create_assigns_link(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a link is assigned under the description factory."""
        created = await orchestrator.create_description(sample_description)

        assert created.document_self_link.startswith("/resources/closure-descriptions/")
        assert created.document_version == 0
        fetched = await orchestrator.get_description(created.document_self_link)
        assert fetched.name == "test"

    @pytest.mark.asyncio
    async def test_client_link_is_honoured(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test the last segment of a client link is used as id."""
        sample_description.document_self_link = "/somewhere/else/my-description"

        created = await orchestrator.create_description(sample_description)
        assert created.document_self_link == "/resources/closure-descriptions/my-description"

        with pytest.raises(DocumentExistsError):
            await orchestrator.create_description(sample_description)

    @pytest.mark.asyncio
    async def test_list_and_delete(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test listing and deleting descriptions."""
        first = await orchestrator.create_description(sample_description)
        await orchestrator.create_description(sample_description)
        assert len(await orchestrator.list_descriptions()) == 2

        await orchestrator.delete_description(first.document_self_link)
        assert len(await orchestrator.list_descriptions()) == 1

        with pytest.raises(NotFoundError):
            await orchestrator.delete_description(first.document_self_link)

    @pytest.mark.asyncio
    async def test_get_missing(self, orchestrator: ClosureOrchestrator):
        """Test missing descriptions are not found."""
        with pytest.raises(NotFoundError):
            await orchestrator.get_description("/resources/closure-descriptions/missing")


class TestCreateClosure:
    """Tests for closure creation."""

    @pytest.mark.asyncio
    async def test_created_state(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test new closures start CREATED."""
        closure = await _create_closure(orchestrator, sample_description, inputs={"a": 1})

        assert closure.state == ClosureState.CREATED
        assert closure.document_self_link.startswith("/resources/closures/")
        assert closure.inputs == {"a": 1}

    @pytest.mark.asyncio
    async def test_client_state_is_discarded(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test state and outcome supplied by the client are ignored."""
        closure = await _create_closure(
            orchestrator,
            sample_description,
            state=ClosureState.FINISHED,
            outputs={"result": 99},
            error_msg="nope",
            image_ref="evil:latest",
        )

        assert closure.state == ClosureState.CREATED
        assert closure.outputs == {}
        assert closure.error_msg is None
        assert closure.image_ref is None

    @pytest.mark.asyncio
    async def test_missing_description(self, orchestrator: ClosureOrchestrator):
        """Test the referenced description must exist."""
        with pytest.raises(NotFoundError, match="Closure description not found"):
            await orchestrator.create_closure(
                Closure(description_link="/resources/closure-descriptions/missing")
            )

    @pytest.mark.asyncio
    async def test_description_link_must_be_description(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a link to another kind of document is not a description."""
        other = await _create_closure(orchestrator, sample_description)

        with pytest.raises(NotFoundError, match="Closure description not found"):
            await orchestrator.create_closure(
                Closure(description_link=other.document_self_link)
            )

    @pytest.mark.asyncio
    async def test_list_by_state(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test closures can be listed by state."""
        first = await _create_closure(orchestrator, sample_description)
        await _create_closure(orchestrator, sample_description)

        await orchestrator.execute(first.document_self_link, {"a": 1})
        await orchestrator.wait_for_completion(first.document_self_link, timeout=5)

        finished = await orchestrator.list_closures(state=ClosureState.FINISHED)
        created = await orchestrator.list_closures(state=ClosureState.CREATED)
        assert [c.document_self_link for c in finished] == [first.document_self_link]
        assert len(created) == 1
        assert len(await orchestrator.list_closures()) == 2


class TestExecute:
    """Tests for closure execution."""

    @pytest.mark.asyncio
    async def test_execute_to_finished(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        image_backend: InMemoryImageBackend,
    ):
        """Test a closure runs to FINISHED with its outputs."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link

        started = await orchestrator.execute(link, {"a": 3})
        assert started.state == ClosureState.STARTED
        assert started.started_at is not None

        done = await orchestrator.wait_for_completion(link, timeout=5)

        assert done.state == ClosureState.FINISHED
        assert done.outputs == {"result": 4}
        assert done.error_msg is None
        assert done.image_ref == NODE_IMAGE
        assert done.host_ref == "http://localhost:8282"
        assert done.execution_id
        assert "executed" in done.logs
        assert image_backend.pull_count == 1

    @pytest.mark.asyncio
    async def test_execute_twice_rejected(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a closure executes at most once."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})

        with pytest.raises(ValidationError, match="cannot be executed in state"):
            await orchestrator.execute(link, {"a": 2})

        done = await orchestrator.wait_for_completion(link, timeout=5)
        assert done.outputs == {"result": 2}

    @pytest.mark.asyncio
    async def test_concurrent_execute_single_winner(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test only one of two concurrent executions starts the closure."""
        closure = await _create_closure(orchestrator, sample_description)

        results = await asyncio.gather(
            orchestrator.execute(closure.document_self_link, {"a": 1}),
            orchestrator.execute(closure.document_self_link, {"a": 2}),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, Closure)) == 1
        assert sum(1 for r in results if isinstance(r, ValidationError)) == 1
        await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

    @pytest.mark.asyncio
    async def test_execute_missing(self, orchestrator: ClosureOrchestrator):
        """Test executing a missing closure."""
        with pytest.raises(NotFoundError):
            await orchestrator.execute("/resources/closures/missing", {})

    @pytest.mark.asyncio
    async def test_execute_after_description_deleted(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a closure whose description is gone cannot execute."""
        closure = await _create_closure(orchestrator, sample_description)
        await orchestrator.delete_description(closure.description_link)

        with pytest.raises(ValidationError, match="is not available"):
            await orchestrator.execute(closure.document_self_link, {"a": 1})

        unchanged = await orchestrator.get_closure(closure.document_self_link)
        assert unchanged.state == ClosureState.CREATED

    @pytest.mark.asyncio
    async def test_execute_with_non_description_link(
        self,
        orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test a closure pointing at another closure cannot execute."""
        other = await _create_closure(orchestrator, sample_description)
        odd = await store.create(
            Closure(
                document_self_link="/resources/closures/odd",
                description_link=other.document_self_link,
            )
        )

        with pytest.raises(ValidationError, match="is not available"):
            await orchestrator.execute(odd.document_self_link, {"a": 1})

        unchanged = await orchestrator.get_closure(odd.document_self_link)
        assert unchanged.state == ClosureState.CREATED

    @pytest.mark.asyncio
    async def test_input_binding(self, orchestrator: ClosureOrchestrator):
        """Test only declared inputs are kept and defaults fill the gaps."""
        description = ClosureDescription(
            name="echo",
            runtime="python",
            source="result = inputs",
            inputs={"a": None, "b": 5, "c": None},
        )
        closure = await _create_closure(orchestrator, description)

        await orchestrator.execute(closure.document_self_link, {"a": 1, "extra": 9})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.inputs == {"a": 1, "b": 5}
        assert done.outputs == {"a": 1, "b": 5}

    @pytest.mark.asyncio
    async def test_creation_inputs_are_merged(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test inputs given at creation apply unless overridden."""
        closure = await _create_closure(orchestrator, sample_description, inputs={"a": 2})

        await orchestrator.execute(closure.document_self_link)
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)
        assert done.outputs == {"result": 3}

    @pytest.mark.asyncio
    async def test_outputs_limited_to_declared(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test undeclared outputs are dropped."""
        dispatcher.set_handler("nodejs", lambda inputs: {"result": 1, "debug": "x"})
        closure = await _create_closure(orchestrator, sample_description)

        await orchestrator.execute(closure.document_self_link, {"a": 0})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)
        assert done.outputs == {"result": 1}


class TestExecutionFailures:
    """Tests for the paths leading to FAILED."""

    @pytest.mark.asyncio
    async def test_script_error(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a worker error fails the closure without outputs."""
        closure = await _create_closure(orchestrator, sample_description)

        await orchestrator.execute(closure.document_self_link, {})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert done.error_msg.startswith("KeyError")
        assert done.outputs == {}

    @pytest.mark.asyncio
    async def test_provisioning_failure(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        provisioner: ImageProvisioner,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test a failed image load fails the closure before dispatch."""
        closure = await _create_closure(
            orchestrator,
            sample_description,
            custom_properties={TEST_FAILURE_PROPERTY: "true"},
        )

        await orchestrator.execute(closure.document_self_link, {"a": 1})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert "Simulated image load failure" in done.error_msg
        assert done.image_ref is None
        assert dispatcher.dispatched == []
        assert provisioner.reference_count(NODE_IMAGE) == 0

    @pytest.mark.asyncio
    async def test_dispatch_failure(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        mock_settings: Settings,
        sample_description: ClosureDescription,
    ):
        """Test an unreachable adapter fails the closure."""
        dispatcher = MockAdapterDispatcher(unreachable_hosts=["http://localhost:8282"])
        orchestrator = _orchestrator_with(store, image_backend, dispatcher, mock_settings)
        closure = await _create_closure(orchestrator, sample_description)

        await orchestrator.execute(closure.document_self_link, {"a": 1})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert "is unreachable" in done.error_msg
        assert done.image_ref == NODE_IMAGE

    @pytest.mark.asyncio
    async def test_timeout(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        mock_settings: Settings,
        sample_description: ClosureDescription,
    ):
        """Test a closure outliving its timeout fails and is cancelled remotely."""
        dispatcher = MockAdapterDispatcher(delay=5)
        orchestrator = _orchestrator_with(store, image_backend, dispatcher, mock_settings)
        sample_description.resources = ResourceConstraints(timeout_seconds=1)
        closure = await _create_closure(orchestrator, sample_description)

        await orchestrator.execute(closure.document_self_link, {"a": 1})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert done.error_msg == "execution timeout"

        await asyncio.sleep(0.05)
        assert dispatcher.cancelled == [done.execution_id]
        await orchestrator.close()


    @pytest.mark.asyncio
    async def test_unusable_description_fails_run(
        self,
        orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test a run that cannot read its description ends FAILED."""
        other = await _create_closure(orchestrator, sample_description)
        closure = Closure(
            document_self_link="/resources/closures/broken",
            description_link=other.document_self_link,
        )
        closure.mark_started({})
        started = await store.create(closure)

        await orchestrator._run(started, other)

        done = await orchestrator.get_closure(started.document_self_link)
        assert done.state == ClosureState.FAILED
        assert done.error_msg.startswith("Unexpected error")

    @pytest.mark.asyncio
    async def test_unfetchable_source_fails(
        self,
        store: InMemoryResourceStore,
        mock_settings: Settings,
    ):
        """Test a source that cannot be fetched fails the closure."""
        dispatcher = MockAdapterDispatcher()
        backend = InMemoryImageBackend(build_sources=[])
        orchestrator = _orchestrator_with(store, backend, dispatcher, mock_settings)
        description = ClosureDescription(
            name="remote",
            runtime="python",
            source_url="https://example.com/unreachable.zip",
        )
        closure = await _create_closure(orchestrator, description)

        await orchestrator.execute(closure.document_self_link, {})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert "Unable to fetch build source" in done.error_msg
        assert done.outputs == {}
        assert dispatcher.dispatched == []


class TestPlacement:
    """Tests for placement-driven host selection."""

    @pytest.mark.asyncio
    async def test_closure_placement(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        sample_description: ClosureDescription,
    ):
        """Test the closure's placement selects the compute host."""
        settings = Settings(
            provisioning=ProvisioningConfig(provider=ProvisioningProvider.MOCK),
            dispatch=DispatchConfig(
                provider=DispatchProvider.MOCK,
                hosts={
                    DEFAULT_RESOURCE_PLACEMENT: ["http://adapter-1:8282"],
                    EDGE: ["http://edge-1:8282"],
                },
            ),
        )
        dispatcher = MockAdapterDispatcher()
        orchestrator = _orchestrator_with(store, image_backend, dispatcher, settings)
        closure = await _create_closure(
            orchestrator, sample_description, custom_properties={PLACEMENT_PROPERTY: EDGE}
        )

        await orchestrator.execute(closure.document_self_link, {"a": 1})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.host_ref == "http://edge-1:8282"
        host, request = dispatcher.dispatched[0]
        assert host == "http://edge-1:8282"
        assert request.placement == EDGE

    @pytest.mark.asyncio
    async def test_unknown_placement_fails(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test a placement without compute hosts fails the closure."""
        closure = await _create_closure(
            orchestrator, sample_description, custom_properties={PLACEMENT_PROPERTY: EDGE}
        )

        await orchestrator.execute(closure.document_self_link, {"a": 1})
        done = await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)

        assert done.state == ClosureState.FAILED
        assert "No compute hosts available" in done.error_msg


class TestCompletionCallback:
    """Tests for completions reported by adapters."""

    @pytest.fixture
    def slow_orchestrator(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        mock_settings: Settings,
    ) -> ClosureOrchestrator:
        """An orchestrator whose executions take five seconds."""
        return _orchestrator_with(
            store, image_backend, MockAdapterDispatcher(delay=5), mock_settings
        )

    @pytest.mark.asyncio
    async def test_matching_completion_applies(
        self,
        slow_orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test a completion for the current execution finishes the closure."""
        closure = await _create_closure(slow_orchestrator, sample_description)
        link = closure.document_self_link
        await slow_orchestrator.execute(link, {"a": 1})
        running = await _wait_until(store, link, lambda c: c.execution_id is not None)

        applied = await slow_orchestrator.complete(
            link,
            CompletionCallback(
                execution_id=running.execution_id,
                outputs={"result": 42, "extra": True},
                logs="from adapter\n",
            ),
        )

        assert applied
        done = await slow_orchestrator.get_closure(link)
        assert done.state == ClosureState.FINISHED
        assert done.outputs == {"result": 42}
        assert done.logs == "from adapter\n"

        await asyncio.sleep(0.05)
        assert slow_orchestrator.running_count == 0

    @pytest.mark.asyncio
    async def test_error_completion_fails(
        self,
        slow_orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test a completion carrying an error fails the closure."""
        closure = await _create_closure(slow_orchestrator, sample_description)
        link = closure.document_self_link
        await slow_orchestrator.execute(link, {"a": 1})
        running = await _wait_until(store, link, lambda c: c.execution_id is not None)

        await slow_orchestrator.complete(
            link, CompletionCallback(execution_id=running.execution_id, error="OOM killed")
        )

        done = await slow_orchestrator.get_closure(link)
        assert done.state == ClosureState.FAILED
        assert done.error_msg == "OOM killed"
        await slow_orchestrator.close()

    @pytest.mark.asyncio
    async def test_mismatched_execution_ignored(
        self,
        slow_orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test completions for another execution are ignored."""
        closure = await _create_closure(slow_orchestrator, sample_description)
        link = closure.document_self_link
        await slow_orchestrator.execute(link, {"a": 1})
        await _wait_until(store, link, lambda c: c.execution_id is not None)

        applied = await slow_orchestrator.complete(
            link, CompletionCallback(execution_id="someone-else")
        )

        assert not applied
        assert (await slow_orchestrator.get_closure(link)).state == ClosureState.STARTED
        await slow_orchestrator.close()

    @pytest.mark.asyncio
    async def test_completion_after_terminal_ignored(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test the first terminal write wins."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        done = await orchestrator.wait_for_completion(link, timeout=5)

        applied = await orchestrator.complete(
            link, CompletionCallback(execution_id=done.execution_id, error="late")
        )

        assert not applied
        unchanged = await orchestrator.get_closure(link)
        assert unchanged.state == ClosureState.FINISHED
        assert unchanged.outputs == {"result": 2}
        assert unchanged.error_msg is None

    @pytest.mark.asyncio
    async def test_completion_after_timeout_ignored(
        self,
        slow_orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
    ):
        """Test a late completion does not overwrite a timeout failure."""
        sample_description.resources = ResourceConstraints(timeout_seconds=1)
        closure = await _create_closure(slow_orchestrator, sample_description)
        link = closure.document_self_link
        await slow_orchestrator.execute(link, {"a": 1})
        failed = await slow_orchestrator.wait_for_completion(link, timeout=5)
        assert failed.error_msg == "execution timeout"

        applied = await slow_orchestrator.complete(
            link,
            CompletionCallback(execution_id=failed.execution_id, outputs={"result": 2}),
        )

        assert not applied
        unchanged = await slow_orchestrator.get_closure(link)
        assert unchanged.state == ClosureState.FAILED
        assert unchanged.error_msg == "execution timeout"
        assert unchanged.outputs == {}
        await slow_orchestrator.close()

    @pytest.mark.asyncio
    async def test_completion_for_missing_closure(self, orchestrator: ClosureOrchestrator):
        """Test completions for unknown closures are not found."""
        with pytest.raises(NotFoundError):
            await orchestrator.complete(
                "/resources/closures/missing", CompletionCallback(execution_id="x")
            )


class TestDeleteClosure:
    """Tests for cancellation and deletion."""

    @pytest.mark.asyncio
    async def test_delete_running_closure(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        mock_settings: Settings,
        sample_description: ClosureDescription,
    ):
        """Test deleting a running closure cancels it everywhere."""
        dispatcher = MockAdapterDispatcher(delay=5)
        orchestrator = _orchestrator_with(store, image_backend, dispatcher, mock_settings)
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        running = await _wait_until(store, link, lambda c: c.execution_id is not None)

        deleted = await orchestrator.delete_closure(link)

        assert deleted.state == ClosureState.CANCELLED
        assert await store.get_or_none(link) is None
        assert dispatcher.cancelled == [running.execution_id]
        assert orchestrator.running_count == 0
        assert orchestrator.provisioner.reference_count(NODE_IMAGE) == 0
        assert image_backend.removed == [NODE_IMAGE]

    @pytest.mark.asyncio
    async def test_delete_created_closure(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test a never-executed closure is cancelled and deleted."""
        closure = await _create_closure(orchestrator, sample_description)

        deleted = await orchestrator.delete_closure(closure.document_self_link)

        assert deleted.state == ClosureState.CANCELLED
        assert dispatcher.cancelled == []

    @pytest.mark.asyncio
    async def test_delete_finished_closure(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        image_backend: InMemoryImageBackend,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test a finished closure keeps its state and releases its image."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        await orchestrator.wait_for_completion(link, timeout=5)

        deleted = await orchestrator.delete_closure(link)

        assert deleted.state == ClosureState.FINISHED
        assert dispatcher.cancelled == []
        assert image_backend.removed == [NODE_IMAGE]

    @pytest.mark.asyncio
    async def test_shared_image_kept_while_referenced(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        image_backend: InMemoryImageBackend,
    ):
        """Test an image shared by two closures survives the first deletion."""
        links = []
        for _ in range(2):
            closure = await _create_closure(orchestrator, sample_description)
            await orchestrator.execute(closure.document_self_link, {"a": 1})
            await orchestrator.wait_for_completion(closure.document_self_link, timeout=5)
            links.append(closure.document_self_link)

        await orchestrator.delete_closure(links[0])
        assert image_backend.removed == []

        await orchestrator.delete_closure(links[1])
        assert image_backend.removed == [NODE_IMAGE]

    @pytest.mark.asyncio
    async def test_delete_missing(self, orchestrator: ClosureOrchestrator):
        """Test deleting a missing closure."""
        with pytest.raises(NotFoundError):
            await orchestrator.delete_closure("/resources/closures/missing")


class TestStats:
    """Tests for container stats."""

    @pytest.mark.asyncio
    async def test_stats_are_stored(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test fetched stats are kept on the closure."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        done = await orchestrator.wait_for_completion(link, timeout=5)

        stats = await orchestrator.fetch_stats(link)

        assert stats.execution_id == done.execution_id
        assert stats.container_stopped
        stored = await orchestrator.get_closure(link)
        assert stored.last_stats == stats
        assert stored.state == ClosureState.FINISHED

    @pytest.mark.asyncio
    async def test_stats_fall_back_to_last_known(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test adapter failures fall back to the stored stats."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        await orchestrator.wait_for_completion(link, timeout=5)
        first = await orchestrator.fetch_stats(link)

        dispatcher.fail_stats = True
        assert await orchestrator.fetch_stats(link) == first

    @pytest.mark.asyncio
    async def test_stats_failure_without_fallback(
        self,
        orchestrator: ClosureOrchestrator,
        sample_description: ClosureDescription,
        dispatcher: MockAdapterDispatcher,
    ):
        """Test adapter failures surface when nothing was stored."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link
        await orchestrator.execute(link, {"a": 1})
        await orchestrator.wait_for_completion(link, timeout=5)

        dispatcher.fail_stats = True
        with pytest.raises(DispatchFailed):
            await orchestrator.fetch_stats(link)

    @pytest.mark.asyncio
    async def test_stats_before_dispatch(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test stats need a dispatched execution."""
        closure = await _create_closure(orchestrator, sample_description)

        with pytest.raises(ValidationError, match="has not been dispatched"):
            await orchestrator.fetch_stats(closure.document_self_link)


class TestWaitForCompletion:
    """Tests for wait_for_completion."""

    @pytest.mark.asyncio
    async def test_timeout(
        self, orchestrator: ClosureOrchestrator, sample_description: ClosureDescription
    ):
        """Test waiting on a closure that never runs times out."""
        closure = await _create_closure(orchestrator, sample_description)

        with pytest.raises(TimeoutExceeded):
            await orchestrator.wait_for_completion(closure.document_self_link, timeout=0.1)

    @pytest.mark.asyncio
    async def test_document_removed_while_waiting(
        self,
        orchestrator: ClosureOrchestrator,
        store: InMemoryResourceStore,
        sample_description: ClosureDescription,
    ):
        """Test waiters learn when the closure disappears."""
        closure = await _create_closure(orchestrator, sample_description)
        link = closure.document_self_link

        waiter = asyncio.create_task(orchestrator.wait_for_completion(link, timeout=5))
        await asyncio.sleep(0.01)
        await store.delete(link)

        with pytest.raises(NotFoundError, match="was deleted"):
            await waiter

    @pytest.mark.asyncio
    async def test_missing(self, orchestrator: ClosureOrchestrator):
        """Test waiting on a missing closure."""
        with pytest.raises(NotFoundError):
            await orchestrator.wait_for_completion("/resources/closures/missing")


class TestClose:
    """Tests for orchestrator shutdown."""

    @pytest.mark.asyncio
    async def test_close_stops_runs(
        self,
        store: InMemoryResourceStore,
        image_backend: InMemoryImageBackend,
        mock_settings: Settings,
        sample_description: ClosureDescription,
    ):
        """Test close cancels in-flight runs."""
        orchestrator = _orchestrator_with(
            store, image_backend, MockAdapterDispatcher(delay=5), mock_settings
        )
        closure = await _create_closure(orchestrator, sample_description)
        await orchestrator.execute(closure.document_self_link, {"a": 1})
        assert orchestrator.running_count == 1

        await orchestrator.close()
        assert orchestrator.running_count == 0
