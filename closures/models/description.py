"""
Closure description models.

A ClosureDescription is the immutable template of a closure: the code to run,
the runtime that runs it, the outputs it declares and its resource limits.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from closures.models.base import ResourceDocument

FACTORY_LINK = "/resources/closure-descriptions"


class RuntimeKind(str, Enum):
    """Sandboxed runtimes a closure can execute in."""

    NODEJS = "nodejs"
    PYTHON = "python"
    POWERSHELL = "powershell"
    JAVA = "java"


class ResourceConstraints(BaseModel):
    """
    Resource limits applied to one closure execution.

    Attributes:
        timeout_seconds: Maximum execution time, measured from STARTED.
        cpu_shares: Relative CPU weight on the compute host.
        memory_mb: Memory limit in megabytes.
    """

    timeout_seconds: int = Field(
        default=10,
        gt=0,
        description="Maximum execution time in seconds",
    )
    cpu_shares: Optional[int] = Field(
        default=None,
        gt=0,
        description="Relative CPU weight on the compute host",
    )
    memory_mb: Optional[int] = Field(
        default=None,
        gt=0,
        description="Memory limit in megabytes",
    )


class ClosureDescription(ResourceDocument):
    """
    Immutable closure template.

    Exactly one of ``source`` (inline code) or ``source_url`` (external
    source, built into a dedicated image) must be set.

    Attributes:
        name: Human-readable name.
        runtime: Runtime kind that executes the code.
        source: Inline code.
        source_url: Location of external source.
        entrypoint: Optional entrypoint inside external source.
        inputs: Declared input names and their default values.
        output_names: Ordered list of declared output keys.
        resources: Resource constraints.
        custom_properties: Free-form properties (may carry a placement hint).
    """

    name: str = Field(
        ...,
        min_length=1,
        description="Human-readable name",
    )
    runtime: RuntimeKind = Field(
        ...,
        description="Runtime kind that executes the code",
    )
    source: Optional[str] = Field(
        default=None,
        description="Inline code",
    )
    source_url: Optional[str] = Field(
        default=None,
        description="Location of external source",
    )
    entrypoint: Optional[str] = Field(
        default=None,
        description="Entrypoint inside external source",
    )
    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Declared input names and their default values",
    )
    output_names: list[str] = Field(
        default_factory=list,
        description="Ordered list of declared output keys",
    )
    resources: ResourceConstraints = Field(
        default_factory=ResourceConstraints,
        description="Resource constraints",
    )
    custom_properties: dict[str, str] = Field(
        default_factory=dict,
        description="Free-form properties",
    )

    @field_validator("source", "source_url", mode="after")
    @classmethod
    def blank_as_unset(cls, v: Optional[str]) -> Optional[str]:
        """Treat whitespace-only code or URLs as not set."""
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_source_exclusive(self) -> "ClosureDescription":
        """Exactly one of source / source_url must be set."""
        if self.source and self.source_url:
            raise ValueError("Cannot provide both 'source' and 'source_url'. Choose one.")
        if not self.source and not self.source_url:
            raise ValueError("Must provide either 'source' or 'source_url'.")
        return self
