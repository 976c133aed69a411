"""
Image backend interface and InMemoryImageBackend implementation.

An image backend performs host-level image operations (inspect, pull,
build, remove) for the image provisioner. The in-memory backend keeps a
set of present images and is used for development and testing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from closures.core.exceptions import ProvisionFailed
from closures.models.closure import TEST_FAILURE_PROPERTY

logger = logging.getLogger(__name__)


class ImageBackend(ABC):
    """
    Abstract base class for image backends.

    Implementations raise ProvisionFailed when the host rejects an
    operation.
    """

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """
        Check whether an image is present on the compute host.

        Args:
            name: Image name with tag.

        Returns:
            True if the image is present.
        """
        ...

    @abstractmethod
    async def pull(
        self,
        name: str,
        registry: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Pull an image and make it available locally under ``name``.

        Args:
            name: Image name with tag.
            registry: Registry to pull from. None uses the host default.
            labels: Labels of the requesting closure.
        """
        ...

    @abstractmethod
    async def build(
        self,
        name: str,
        *,
        base_image: Optional[str] = None,
        source_url: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Build an image tagged ``name``.

        Exactly one of base_image or source_url is used: source_url builds
        from an external context, base_image derives a runtime image.
        """
        ...

    @abstractmethod
    async def remove(self, name: str) -> None:
        """
        Remove an image from the compute host.

        Removing an absent image is not an error.
        """
        ...

    async def close(self) -> None:
        """Release resources held by the backend."""


class InMemoryImageBackend(ImageBackend):
    """
    In-memory image backend.

    Keeps the set of present images in a set. Suitable for development and
    testing. Pull and build fail on purpose when the requesting closure
    carries ``closure.test.failure.expected=true``.

    Attributes:
        images: Names of present images.
        pulled: Names pulled, in order, with the registry used.
        built: Names built, in order.
        removed: Names removed, in order.
    """

    def __init__(
        self,
        images: Iterable[str] = (),
        build_sources: Optional[Iterable[str]] = None,
        delay: float = 0.0,
    ):
        """
        Initialize the backend.

        Args:
            images: Images present from the start.
            build_sources: Source URLs that can be fetched for builds. If
                None, every source can be fetched.
            delay: Seconds each pull or build takes.
        """
        self.images: set[str] = set(images)
        self._build_sources = set(build_sources) if build_sources is not None else None
        self._delay = delay
        self.pulled: list[tuple[str, Optional[str]]] = []
        self.built: list[str] = []
        self.removed: list[str] = []

    async def exists(self, name: str) -> bool:
        return name in self.images

    async def pull(
        self,
        name: str,
        registry: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if _failure_expected(labels):
            raise ProvisionFailed(f"Simulated image load failure for {name}")
        self.pulled.append((name, registry))
        self.images.add(name)
        logger.debug(f"Pulled image {name} from {registry or 'default registry'}")

    async def build(
        self,
        name: str,
        *,
        base_image: Optional[str] = None,
        source_url: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if _failure_expected(labels):
            raise ProvisionFailed(f"Simulated image create failure for {name}")
        if source_url is not None:
            if self._build_sources is not None and source_url not in self._build_sources:
                raise ProvisionFailed(f"Unable to fetch build source {source_url}")
        elif not base_image:
            raise ProvisionFailed(f"No base image to build {name} from")
        self.built.append(name)
        self.images.add(name)
        logger.debug(f"Built image {name}")

    async def remove(self, name: str) -> None:
        if name in self.images:
            self.images.discard(name)
            self.removed.append(name)

    @property
    def pull_count(self) -> int:
        """Number of successful pulls."""
        return len(self.pulled)

    @property
    def build_count(self) -> int:
        """Number of successful builds."""
        return len(self.built)


def _failure_expected(labels: Optional[dict[str, str]]) -> bool:
    if not labels:
        return False
    return str(labels.get(TEST_FAILURE_PROPERTY, "")).lower() == "true"
