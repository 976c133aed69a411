"""
Runtime image provisioning results.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ProvisionPath(str, Enum):
    """How a runtime image was obtained."""

    CACHE = "cache"
    PULL = "pull"
    BUILD = "build"


class ProvisionResult(BaseModel):
    """Outcome of a successful provisioning request."""

    model_config = ConfigDict(frozen=True)

    image_ref: str
    ready: bool = True
    path: ProvisionPath
