"""
Base document model shared by every persisted resource.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ResourceDocument(BaseModel):
    """
    Versioned document kept in the resource store.

    Attributes:
        document_self_link: Address of the document (assigned on creation).
        document_version: Version bumped by the store on every write.
        document_update_time: Time of the last write.
    """

    model_config = ConfigDict(frozen=False)

    document_self_link: Optional[str] = Field(
        default=None,
        description="Address of the document (assigned on creation)",
    )
    document_version: int = Field(
        default=0,
        ge=0,
        description="Version bumped by the store on every write",
    )
    document_update_time: datetime = Field(
        default_factory=utcnow,
        description="Time of the last write",
    )

    @property
    def document_id(self) -> Optional[str]:
        """Last path segment of the self link."""
        if not self.document_self_link:
            return None
        return self.document_self_link.rstrip("/").rsplit("/", 1)[-1]
