"""
Docker-based image backend.

Talks to the Docker daemon through aiodocker to inspect, pull, build and
remove runtime images on the compute host.
"""

import io
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import aiodocker
from aiodocker.exceptions import DockerError
from aiodocker.utils import mktar_from_dockerfile

from closures.core.exceptions import ProvisionFailed
from closures.services.provisioning.backend import ImageBackend

logger = logging.getLogger(__name__)

# Label set on every image this service creates
MANAGED_LABEL = "closures.managed"


class DockerImageBackend(ImageBackend):
    """
    Image backend over the Docker Engine API.

    Pulled images are re-tagged locally under the runtime image name so
    later closures find them by that name. Builds either derive a runtime
    image from a base image through a generated Dockerfile, or use an
    external build context given by URL.

    Example config.yaml:
        provisioning:
          provider: docker
          docker_socket_url: "unix:///var/run/docker.sock"
    """

    def __init__(self, docker_socket_url: Optional[str] = None):
        """
        Initialize the DockerImageBackend.

        Args:
            docker_socket_url: Docker socket URL (e.g., 'unix:///var/run/docker.sock').
                              If None, uses aiodocker default.
        """
        self._docker_socket_url = docker_socket_url
        self._docker: Any = None

    def _get_docker_client(self) -> Any:
        """
        Get or create the Docker client.

        Raises:
            ProvisionFailed: If the Docker client cannot be created.
        """
        if self._docker is None:
            try:
                if self._docker_socket_url:
                    logger.debug(f"Connecting to Docker at: {self._docker_socket_url}")
                    self._docker = aiodocker.Docker(url=self._docker_socket_url)
                else:
                    logger.debug("Connecting to Docker with default socket")
                    self._docker = aiodocker.Docker()
            except Exception as e:
                raise ProvisionFailed(f"Failed to create Docker client: {e}") from e
        return self._docker

    async def close(self) -> None:
        """Close the Docker client."""
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    async def exists(self, name: str) -> bool:
        docker = self._get_docker_client()
        try:
            await docker.images.inspect(name)
            return True
        except DockerError as e:
            if e.status == 404:
                return False
            raise ProvisionFailed(f"Failed to inspect image {name}: {e}") from e

    async def pull(
        self,
        name: str,
        registry: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        docker = self._get_docker_client()
        source = f"{_registry_host(registry)}/{name}" if registry else name
        logger.info(f"Pulling image {source}")
        try:
            await docker.images.pull(source)
            if source != name:
                repo, tag = _split_tag(name)
                await docker.images.tag(source, repo, tag=tag)
        except DockerError as e:
            raise ProvisionFailed(f"Failed to pull image {source}: {e}") from e

    async def build(
        self,
        name: str,
        *,
        base_image: Optional[str] = None,
        source_url: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        docker = self._get_docker_client()
        image_labels = {MANAGED_LABEL: "true", **(labels or {})}
        try:
            if source_url is not None:
                logger.info(f"Building image {name} from {source_url}")
                await docker.images.build(
                    remote=source_url,
                    tag=name,
                    labels=image_labels,
                    rm=True,
                )
            elif base_image:
                logger.info(f"Building image {name} from base image {base_image}")
                dockerfile = io.BytesIO(f"FROM {base_image}\n".encode("utf-8"))
                context = mktar_from_dockerfile(dockerfile)
                try:
                    await docker.images.build(
                        fileobj=context,
                        encoding="gzip",
                        tag=name,
                        labels=image_labels,
                        pull=True,
                        rm=True,
                    )
                finally:
                    context.close()
            else:
                raise ProvisionFailed(f"No base image to build {name} from")
        except DockerError as e:
            raise ProvisionFailed(f"Failed to build image {name}: {e}") from e

    async def remove(self, name: str) -> None:
        docker = self._get_docker_client()
        try:
            await docker.images.delete(name)
            logger.info(f"Removed image {name}")
        except DockerError as e:
            if e.status == 404:
                return
            raise ProvisionFailed(f"Failed to remove image {name}: {e}") from e


def _registry_host(registry: str) -> str:
    """Strip the scheme from a registry URL, e.g. https://hbr:5000 -> hbr:5000."""
    parsed = urlparse(registry)
    if parsed.netloc:
        return parsed.netloc + parsed.path.rstrip("/")
    return registry.rstrip("/")


def _split_tag(name: str) -> tuple[str, Optional[str]]:
    repo, sep, tag = name.rpartition(":")
    if not sep or "/" in tag:
        return name, None
    return repo, tag
