"""
Dependency Injection Container for the closure execution service.

Provides lazy initialization of shared resources using lru_cache.
Ensures singletons are created once during startup and shared across
FastAPI dependencies.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

import httpx

from closures.core.config import DispatchProvider, ProvisioningProvider, Settings, get_settings

if TYPE_CHECKING:
    from closures.services.batch import BatchMaterializer, DescriptionContentService
    from closures.services.dispatch.base import AdapterDispatcher
    from closures.services.orchestrator import ClosureOrchestrator
    from closures.services.provisioning.backend import ImageBackend
    from closures.services.provisioning.provisioner import ImageProvisioner
    from closures.services.registry import RegistryClient
    from closures.services.store import ResourceStore

logger = logging.getLogger(__name__)


class Container:
    """
    Dependency Injection Container.

    Manages lifecycle of shared resources:
    - Settings (configuration)
    - HTTP Client (httpx.AsyncClient)
    - Resource store
    - Registry client, image backend and image provisioner
    - Adapter dispatcher
    - Closure orchestrator and batch creation services

    Usage:
        container = get_container()
        orchestrator = container.get_orchestrator()
        closure = await orchestrator.execute(link, inputs)
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the container.

        Args:
            settings: Optional settings override. If None, loads from config.
        """
        self._settings = settings
        self._http_client: httpx.AsyncClient | None = None
        self._store: "ResourceStore | None" = None
        self._registry_client: "RegistryClient | None" = None
        self._image_backend: "ImageBackend | None" = None
        self._provisioner: "ImageProvisioner | None" = None
        self._dispatcher: "AdapterDispatcher | None" = None
        self._orchestrator: "ClosureOrchestrator | None" = None
        self._materializer: "BatchMaterializer | None" = None
        self._content_service: "DescriptionContentService | None" = None

    @property
    def settings(self) -> Settings:
        """
        Get the application settings.

        Returns:
            Cached Settings instance.
        """
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def get_http_client(self) -> httpx.AsyncClient:
        """
        Get or create the shared HTTP client.

        The client is lazily initialized on first access.
        Call close_http_client() during shutdown to properly close connections.

        Returns:
            Shared httpx.AsyncClient instance.
        """
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._http_client

    async def close_http_client(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def get_store(self) -> "ResourceStore":
        """Get or create the resource store."""
        if self._store is None:
            from closures.services.store import InMemoryResourceStore

            self._store = InMemoryResourceStore()
        return self._store

    def get_registry_client(self) -> "RegistryClient":
        """
        Get or create the registry client.

        The mock provisioning provider pairs with the in-memory registry;
        otherwise registries are queried over HTTP.
        """
        if self._registry_client is None:
            if self.settings.provisioning.provider == ProvisioningProvider.MOCK:
                from closures.services.registry import InMemoryRegistryClient

                self._registry_client = InMemoryRegistryClient()
            else:
                from closures.services.registry import HttpRegistryClient

                self._registry_client = HttpRegistryClient(
                    http_client=self.get_http_client()
                )
        return self._registry_client

    def get_image_backend(self) -> "ImageBackend":
        """
        Get or create the image backend.

        Raises:
            ValueError: If the configured provider is not supported
        """
        if self._image_backend is None:
            provider = self.settings.provisioning.provider

            if provider == ProvisioningProvider.DOCKER:
                from closures.services.provisioning.docker_backend import DockerImageBackend

                self._image_backend = DockerImageBackend(
                    docker_socket_url=self.settings.provisioning.docker_socket_url,
                )

            elif provider == ProvisioningProvider.MOCK:
                from closures.services.provisioning.backend import InMemoryImageBackend

                self._image_backend = InMemoryImageBackend()

            else:
                raise ValueError(f"Unsupported provisioning provider: {provider}")

        return self._image_backend

    def get_provisioner(self) -> "ImageProvisioner":
        """Get or create the image provisioner."""
        if self._provisioner is None:
            from closures.services.provisioning.provisioner import ImageProvisioner

            self._provisioner = ImageProvisioner(
                backend=self.get_image_backend(),
                registry_client=self.get_registry_client(),
                settings=self.settings,
            )
        return self._provisioner

    def get_dispatcher(self) -> "AdapterDispatcher":
        """
        Get or create the adapter dispatcher.

        Raises:
            ValueError: If the configured provider is not supported
        """
        if self._dispatcher is None:
            dispatch_config = self.settings.dispatch
            provider = dispatch_config.provider

            if provider == DispatchProvider.HTTP:
                from closures.services.dispatch.http import HttpAdapterDispatcher

                self._dispatcher = HttpAdapterDispatcher(
                    http_client=self.get_http_client(),
                    request_grace_seconds=dispatch_config.request_grace_seconds,
                )

            elif provider == DispatchProvider.LOCAL:
                from closures.services.dispatch.local import LocalAdapterDispatcher

                self._dispatcher = LocalAdapterDispatcher(
                    python_executable=dispatch_config.python_executable,
                    node_executable=dispatch_config.node_executable,
                    request_grace_seconds=dispatch_config.request_grace_seconds,
                )

            elif provider == DispatchProvider.MOCK:
                from closures.services.dispatch.mock import MockAdapterDispatcher

                self._dispatcher = MockAdapterDispatcher()

            else:
                raise ValueError(f"Unsupported dispatch provider: {provider}")

        return self._dispatcher

    def get_orchestrator(self) -> "ClosureOrchestrator":
        """Get or create the closure orchestrator."""
        if self._orchestrator is None:
            from closures.services.orchestrator import ClosureOrchestrator

            self._orchestrator = ClosureOrchestrator(
                store=self.get_store(),
                provisioner=self.get_provisioner(),
                dispatcher=self.get_dispatcher(),
                settings=self.settings,
            )
        return self._orchestrator

    async def close_orchestrator(self) -> None:
        """Stop in-flight executions."""
        if self._orchestrator is not None:
            await self._orchestrator.close()
            self._orchestrator = None

    def get_batch_materializer(self) -> "BatchMaterializer":
        """Get or create the batch materializer."""
        if self._materializer is None:
            from closures.services.batch import BatchMaterializer

            self._materializer = BatchMaterializer(
                max_concurrency=self.settings.batch.max_concurrency,
            )
        return self._materializer

    def get_content_service(self) -> "DescriptionContentService":
        """Get or create the multi-document description service."""
        if self._content_service is None:
            from closures.services.batch import DescriptionContentService

            self._content_service = DescriptionContentService(
                orchestrator=self.get_orchestrator(),
                materializer=self.get_batch_materializer(),
                document_separator=self.settings.batch.document_separator,
            )
        return self._content_service

    async def startup(self) -> None:
        """
        Initialize resources on application startup.

        Called by FastAPI lifespan context manager.
        Pre-initializes critical resources and validates configuration.
        """
        # Pre-initialize settings to catch config errors early
        _ = self.settings
        _ = self.get_http_client()
        _ = self.get_orchestrator()
        logger.info(
            f"Container started (provisioning={self.settings.provisioning.provider.value}, "
            f"dispatch={self.settings.dispatch.provider.value})"
        )

    async def shutdown(self) -> None:
        """
        Clean up resources on application shutdown.

        Called by FastAPI lifespan context manager.
        """
        await self.close_orchestrator()
        self._content_service = None
        if self._dispatcher is not None:
            await self._dispatcher.close()
            self._dispatcher = None
        if self._provisioner is not None:
            await self._provisioner.close()
            self._provisioner = None
            self._image_backend = None
        elif self._image_backend is not None:
            await self._image_backend.close()
            self._image_backend = None
        if self._registry_client is not None:
            await self._registry_client.close()
            self._registry_client = None
        await self.close_http_client()


# Global container instance using lru_cache for singleton behavior
@lru_cache
def get_container() -> Container:
    """
    Get the cached container instance.

    Uses lru_cache to ensure container is a singleton.
    Call get_container.cache_clear() to reset (useful for testing).

    Returns:
        Cached Container instance.
    """
    return Container()


def clear_container_cache() -> None:
    """
    Clear the container cache.

    Useful for testing to reset the container state.
    Also clears the settings cache.
    """
    get_container.cache_clear()
    get_settings.cache_clear()


# Convenience functions for FastAPI dependencies
def get_settings_dep() -> Settings:
    """
    FastAPI dependency for getting settings.

    Usage:
        @app.get("/")
        async def root(settings: Settings = Depends(get_settings_dep)):
            ...
    """
    return get_container().settings


def get_orchestrator_dep() -> "ClosureOrchestrator":
    """
    FastAPI dependency for getting the closure orchestrator.

    Usage:
        @router.post("/resources/closures/{closure_id}")
        async def execute(
            closure_id: str,
            orchestrator: ClosureOrchestrator = Depends(get_orchestrator_dep),
        ):
            return await orchestrator.execute(link, inputs)
    """
    return get_container().get_orchestrator()


def get_content_service_dep() -> "DescriptionContentService":
    """FastAPI dependency for getting the multi-document description service."""
    return get_container().get_content_service()


def get_registry_client_dep() -> "RegistryClient":
    """FastAPI dependency for getting the registry client."""
    return get_container().get_registry_client()
