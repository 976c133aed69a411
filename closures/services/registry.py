"""
Image registry clients.

Queries an image registry for reachability and for the repositories of a
project. The HTTP client speaks the registry's JSON API; the in-memory
client serves a fixed repository table for tests and offline runs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Union

import httpx

from closures.core.exceptions import ClosureError, ErrorKind

logger = logging.getLogger(__name__)


class RegistryError(ClosureError):
    """Raised when a registry rejects a query."""

    kind = ErrorKind.VALIDATION


class RegistryProjectNotFound(RegistryError):
    """Raised when the queried project does not exist in the registry."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, project_id: Union[int, str]):
        self.project_id = project_id
        super().__init__(f"project {project_id} not found")


class RegistryUnavailable(RegistryError):
    """Raised when the registry cannot be reached."""

    kind = ErrorKind.UNAVAILABLE


class RegistryClient(ABC):
    """Abstract registry query interface."""

    @abstractmethod
    async def is_reachable(self, registry_url: str) -> bool:
        """
        Check whether a registry answers.

        Never raises; an unreachable registry is simply False.
        """
        ...

    @abstractmethod
    async def list_repositories(
        self,
        registry_url: str,
        project_id: Optional[Union[int, str]],
        detail: bool = False,
    ) -> list[Any]:
        """
        List the repositories of a project.

        Args:
            registry_url: Registry base URL.
            project_id: Project to list. Required.
            detail: Return repository records instead of names.

        Returns:
            Repository names, or repository records when detail is set.

        Raises:
            RegistryError: If project_id is missing.
            RegistryProjectNotFound: If the project does not exist.
            RegistryUnavailable: If the registry cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Release resources held by the client."""


class HttpRegistryClient(RegistryClient):
    """
    Registry client over HTTP.

    Endpoints:
        GET {registry}/api/ping
        GET {registry}/api/repositories?project_id=..[&detail=true]
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize the client.

        Args:
            http_client: Shared HTTP client. If None, one is created and
                owned by this instance.
            timeout: Request timeout in seconds.
        """
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self._timeout = timeout

    async def is_reachable(self, registry_url: str) -> bool:
        url = f"{_normalize_url(registry_url)}/api/ping"
        try:
            response = await self._http_client.get(url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.info(f"Registry {registry_url} is not reachable: {e}")
            return False
        return response.is_success

    async def list_repositories(
        self,
        registry_url: str,
        project_id: Optional[Union[int, str]],
        detail: bool = False,
    ) -> list[Any]:
        if project_id is None or str(project_id).strip() == "":
            raise RegistryError("invalid project_id")

        params = {"project_id": str(project_id)}
        if detail:
            params["detail"] = "true"

        url = f"{_normalize_url(registry_url)}/api/repositories"
        try:
            response = await self._http_client.get(
                url, params=params, timeout=self._timeout
            )
        except httpx.HTTPError as e:
            raise RegistryUnavailable(f"Registry {registry_url} is unavailable: {e}") from e

        if response.status_code == 404:
            raise RegistryProjectNotFound(project_id)
        if response.status_code == 400:
            raise RegistryError(response.text or "invalid project_id")
        if not response.is_success:
            raise RegistryUnavailable(
                f"Registry {registry_url} answered {response.status_code}"
            )
        return response.json()

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


class InMemoryRegistryClient(RegistryClient):
    """
    Registry client backed by a fixed repository table.

    Usage:
        registry = InMemoryRegistryClient(reachable=["https://hbr.local"])
        await registry.list_repositories("https://hbr.local", 1)
        # ["library/alpine", "library/alpine-again"]
    """

    DEFAULT_PROJECT_ID = 1

    def __init__(
        self,
        reachable: Iterable[str] = (),
        repositories: Optional[dict[str, list[dict[str, Any]]]] = None,
    ):
        """
        Initialize the fake registry.

        Args:
            reachable: Registry URLs that answer pings.
            repositories: Project id (as string) to repository records. If
                None, project 1 holds library/alpine and library/alpine-again.
        """
        self._reachable = {_normalize_url(url) for url in reachable}
        if repositories is None:
            repositories = {
                str(self.DEFAULT_PROJECT_ID): [
                    {"id": "1", "name": "library/alpine", "tags_count": 3},
                    {"id": "2", "name": "library/alpine-again", "tags_count": 1},
                ]
            }
        self._repositories = repositories

    def set_reachable(self, registry_url: str, reachable: bool = True) -> None:
        """Mark a registry as reachable or unreachable."""
        url = _normalize_url(registry_url)
        if reachable:
            self._reachable.add(url)
        else:
            self._reachable.discard(url)

    async def is_reachable(self, registry_url: str) -> bool:
        return _normalize_url(registry_url) in self._reachable

    async def list_repositories(
        self,
        registry_url: str,
        project_id: Optional[Union[int, str]],
        detail: bool = False,
    ) -> list[Any]:
        if project_id is None or str(project_id).strip() == "":
            logger.warning("project_id was not set")
            raise RegistryError("invalid project_id")

        records = self._repositories.get(str(project_id).strip())
        if records is None:
            logger.warning(f"Unknown project_id: {project_id}")
            raise RegistryProjectNotFound(project_id)

        if detail:
            return [dict(record) for record in records]
        return [record["name"] for record in records]


def _normalize_url(url: str) -> str:
    return url.rstrip("/")
