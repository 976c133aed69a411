"""
Image provisioner.

Makes the runtime image of a closure available on the compute host, either
from the local cache, by pulling it from a registry, or by building it.
Tracks how many closures reference each image so unused images can be
reclaimed.
"""

import asyncio
import hashlib
import logging
from typing import Optional, Union

from closures.core.config import Settings, get_settings
from closures.core.exceptions import ProvisionFailed, ValidationError
from closures.models.description import RuntimeKind
from closures.models.provisioning import ProvisionPath, ProvisionResult
from closures.services.provisioning.backend import ImageBackend
from closures.services.registry import RegistryClient

logger = logging.getLogger(__name__)


class ImageProvisioner:
    """
    Provision runtime images for closures.

    Decision order for a request:
        1. Image already on the host -> ready (cache).
        2. External source given -> build from that source.
        3. No registry configured -> pull from the platform registry.
        4. Configured registry reachable -> pull from it.
        5. Otherwise -> build from the runtime's base image.

    Failures are reported once as ProvisionFailed and never retried.
    Concurrent requests for the same image are serialised so the host sees
    a single pull or build.

    Usage:
        provisioner = ImageProvisioner(backend, registry_client, settings)
        result = await provisioner.provision("nodejs")
        ...
        await provisioner.release(result.image_ref)
    """

    def __init__(
        self,
        backend: ImageBackend,
        registry_client: RegistryClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the provisioner.

        Args:
            backend: Host-level image operations.
            registry_client: Used to check registry reachability.
            settings: Application settings. If None, loads from config.
        """
        self._backend = backend
        self._registry_client = registry_client
        self._settings = settings or get_settings()
        self._locks: dict[str, asyncio.Lock] = {}
        self._references: dict[str, int] = {}

    @property
    def backend(self) -> ImageBackend:
        """Get the image backend."""
        return self._backend

    def image_name_for(
        self,
        runtime: Union[RuntimeKind, str],
        source_url: Optional[str] = None,
    ) -> str:
        """
        Compute the image name of a runtime.

        Closures with external source get a source-specific image so they
        never share an image with inline-code closures.
        """
        kind = _parse_runtime(runtime)
        config = self._settings.provisioning
        if source_url:
            digest = hashlib.sha256(source_url.encode("utf-8")).hexdigest()[:12]
            return f"{config.image_prefix}{kind.value}-src-{digest}:{config.image_tag}"
        return f"{config.image_prefix}{kind.value}:{config.image_tag}"

    async def provision(
        self,
        runtime: Union[RuntimeKind, str],
        registry_hint: Optional[str] = None,
        *,
        source_url: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> ProvisionResult:
        """
        Make the runtime image available on the compute host.

        Each successful call acquires one reference on the returned image;
        callers hand it back with release().

        Args:
            runtime: Runtime kind.
            registry_hint: Registry to use instead of the configured one.
            source_url: External source to build a dedicated image from.
            labels: Labels of the requesting closure.

        Returns:
            ProvisionResult with the ready image.

        Raises:
            ValidationError: If the runtime kind is unknown.
            ProvisionFailed: If the pull or build failed.
        """
        kind = _parse_runtime(runtime)
        name = self.image_name_for(kind, source_url)
        registry = registry_hint or self._settings.get_registry_for(kind.value)

        async with self._lock_for(name):
            path = await self._ensure_image(kind, name, registry, source_url, labels or {})
            self._references[name] = self._references.get(name, 0) + 1

        logger.info(f"Provisioned image {name} via {path.value}")
        return ProvisionResult(image_ref=name, ready=True, path=path)

    async def _ensure_image(
        self,
        kind: RuntimeKind,
        name: str,
        registry: Optional[str],
        source_url: Optional[str],
        labels: dict[str, str],
    ) -> ProvisionPath:
        if await self._backend.exists(name):
            return ProvisionPath.CACHE

        if source_url:
            await self._backend.build(name, source_url=source_url, labels=labels)
            return ProvisionPath.BUILD

        if registry is None:
            await self._backend.pull(
                name, self._settings.provisioning.platform_registry, labels
            )
            return ProvisionPath.PULL

        if await self._registry_client.is_reachable(registry):
            await self._backend.pull(name, registry, labels)
            return ProvisionPath.PULL

        base_image = self._settings.provisioning.base_images.get(kind.value)
        if not base_image:
            raise ProvisionFailed(
                f"Registry {registry} is unreachable and no base image is "
                f"configured for runtime {kind.value}"
            )
        logger.info(f"Registry {registry} unreachable, building {name} from {base_image}")
        await self._backend.build(name, base_image=base_image, labels=labels)
        return ProvisionPath.BUILD

    async def release(self, image_ref: Optional[str]) -> None:
        """
        Drop one reference on an image.

        When no closure references the image any more and reclaiming is
        enabled, the image is removed from the host. Removal failures are
        logged, not raised.
        """
        if not image_ref or image_ref not in self._references:
            return

        async with self._lock_for(image_ref):
            count = self._references.get(image_ref, 0) - 1
            if count > 0:
                self._references[image_ref] = count
                return
            self._references.pop(image_ref, None)

            if not self._settings.provisioning.reclaim_unused_images:
                return
            try:
                await self._backend.remove(image_ref)
                logger.info(f"Reclaimed unused image {image_ref}")
            except ProvisionFailed as e:
                logger.warning(f"Failed to reclaim image {image_ref}: {e}")

    def reference_count(self, image_ref: str) -> int:
        """Get the number of closures referencing an image."""
        return self._references.get(image_ref, 0)

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def close(self) -> None:
        """Close the image backend."""
        await self._backend.close()


def _parse_runtime(runtime: Union[RuntimeKind, str]) -> RuntimeKind:
    try:
        return RuntimeKind(runtime)
    except ValueError:
        raise ValidationError(f"Unsupported runtime: {runtime}") from None
