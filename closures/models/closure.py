"""
Closure execution instance models.

Defines the Closure document and its state machine:

    CREATED -> STARTED -> FINISHED | FAILED
    any non-terminal state -> CANCELLED
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from closures.models.base import ResourceDocument, utcnow
from closures.models.dispatch import ContainerStats

FACTORY_LINK = "/resources/closures"

# Custom property naming the resource placement to run in.
PLACEMENT_PROPERTY = "closure.placement"
# Custom property that makes fake backends fail on purpose.
TEST_FAILURE_PROPERTY = "closure.test.failure.expected"


class ClosureState(str, Enum):
    """Lifecycle states of a closure execution."""

    CREATED = "CREATED"
    STARTED = "STARTED"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset(
    {ClosureState.FINISHED, ClosureState.FAILED, ClosureState.CANCELLED}
)


class Closure(ResourceDocument):
    """
    One execution of a closure description against a set of inputs.

    Attributes:
        description_link: Link of the ClosureDescription (read-only after creation).
        inputs: Input values.
        outputs: Output values, populated only when FINISHED.
        state: Current state.
        error_msg: Cause of failure, set iff FAILED.
        logs: Worker logs.
        custom_properties: Free-form properties (placement hint, test hooks).
        image_ref: Runtime image provisioned for this closure.
        host_ref: Compute host adapter the execution was dispatched to.
        execution_id: Identifier of the dispatched execution.
        last_stats: Last container stats fetched for the execution.
        created_at: Creation timestamp.
        started_at: Timestamp of the CREATED -> STARTED transition.
        completed_at: Timestamp of the terminal transition.
    """

    description_link: str = Field(
        ...,
        min_length=1,
        description="Link of the closure description",
    )
    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Input values",
    )
    outputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Output values (populated only when FINISHED)",
    )
    state: ClosureState = Field(
        default=ClosureState.CREATED,
        description="Current state",
    )
    error_msg: Optional[str] = Field(
        default=None,
        description="Cause of failure (set iff FAILED)",
    )
    logs: str = Field(
        default="",
        description="Worker logs",
    )
    custom_properties: dict[str, str] = Field(
        default_factory=dict,
        description="Free-form properties",
    )
    image_ref: Optional[str] = Field(
        default=None,
        description="Runtime image provisioned for this closure",
    )
    host_ref: Optional[str] = Field(
        default=None,
        description="Compute host adapter the execution was dispatched to",
    )
    execution_id: Optional[str] = Field(
        default=None,
        description="Identifier of the dispatched execution",
    )
    last_stats: Optional[ContainerStats] = Field(
        default=None,
        description="Last container stats fetched for the execution",
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        description="Creation timestamp",
    )
    started_at: Optional[datetime] = Field(
        default=None,
        description="Execution start timestamp",
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        description="Execution completion timestamp",
    )

    def mark_started(self, inputs: dict[str, Any]) -> "Closure":
        """Accept inputs and move CREATED -> STARTED."""
        self._require_state(ClosureState.CREATED)
        self.state = ClosureState.STARTED
        self.inputs = inputs
        self.started_at = utcnow()
        return self

    def mark_finished(self, outputs: dict[str, Any], logs: str = "") -> "Closure":
        """
        Mark the closure as finished with its outputs.

        Args:
            outputs: Output values.
            logs: Worker logs to append.

        Returns:
            Self for method chaining.
        """
        self._require_state(ClosureState.STARTED)
        self.state = ClosureState.FINISHED
        self.completed_at = utcnow()
        self.outputs = outputs
        self.append_logs(logs)
        return self

    def mark_failed(self, error: str, logs: str = "") -> "Closure":
        """
        Mark the closure as failed.

        Args:
            error: Human-readable cause. An empty cause is replaced by a
                generic message so FAILED always carries one.
            logs: Worker logs to append.

        Returns:
            Self for method chaining.
        """
        self._require_state(ClosureState.STARTED)
        self.state = ClosureState.FAILED
        self.completed_at = utcnow()
        self.error_msg = error or "execution failed"
        self.outputs = {}
        self.append_logs(logs)
        return self

    def mark_cancelled(self) -> "Closure":
        """Mark a non-terminal closure as cancelled."""
        if self.is_terminal:
            raise ValueError(f"Closure already in terminal state {self.state.value}")
        self.state = ClosureState.CANCELLED
        self.completed_at = utcnow()
        return self

    def append_logs(self, logs: str) -> None:
        """Append logs to the closure."""
        if logs:
            self.logs = self.logs + logs if self.logs else logs

    def _require_state(self, expected: ClosureState) -> None:
        if self.state != expected:
            raise ValueError(
                f"Invalid transition from {self.state.value}: expected {expected.value}"
            )

    @property
    def is_terminal(self) -> bool:
        """Check if the closure is in a terminal state."""
        return self.state in TERMINAL_STATES

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate execution duration in seconds."""
        if self.started_at is None:
            return None
        end_time = self.completed_at or utcnow()
        return (end_time - self.started_at).total_seconds()


class ClosureExecutionRequest(BaseModel):
    """Body of an execution POST against an existing closure."""

    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Input values",
    )


class CompletionCallback(BaseModel):
    """Completion reported back by a compute host adapter."""

    execution_id: str = Field(..., min_length=1)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    logs: str = ""
