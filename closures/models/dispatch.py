"""
Payloads exchanged with compute host adapters.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from closures.models.description import ResourceConstraints, RuntimeKind


class ExecutionRequest(BaseModel):
    """
    Request sent to a compute host adapter to run one closure.

    Attributes:
        execution_id: Identifier of this execution attempt.
        closure_link: Link of the closure being executed.
        runtime: Runtime kind.
        source: Inline code (mutually exclusive with source_url).
        source_url: External source location.
        entrypoint: Entrypoint inside external source.
        image_ref: Provisioned runtime image.
        inputs: Input values.
        output_names: Declared output keys.
        placement: Resolved resource placement.
        resources: Resource constraints.
        custom_properties: Custom properties of the closure.
    """

    execution_id: str
    closure_link: str
    runtime: RuntimeKind
    source: Optional[str] = None
    source_url: Optional[str] = None
    entrypoint: Optional[str] = None
    image_ref: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    output_names: list[str] = Field(default_factory=list)
    placement: str
    resources: ResourceConstraints = Field(default_factory=ResourceConstraints)
    custom_properties: dict[str, str] = Field(default_factory=dict)


class ExecutionOutcome(BaseModel):
    """
    Completion reported by a compute host adapter.

    A non-empty ``error`` means the worker itself reported a runtime or
    script error.
    """

    model_config = ConfigDict(frozen=True)

    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    logs: str = ""

    @property
    def success(self) -> bool:
        """Whether the worker completed without error."""
        return not self.error


class ContainerStats(BaseModel):
    """Resource usage of the container running an execution."""

    execution_id: Optional[str] = None
    cpu_usage: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    network_in: int = 0
    network_out: int = 0
    container_stopped: bool = False
