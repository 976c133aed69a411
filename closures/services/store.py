"""
Resource store interface and implementations.

Provides an abstract base class for versioned document storage and an
in-memory implementation used by the service and its tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from closures.core.exceptions import (
    DocumentExistsError,
    DocumentNotFoundError,
    StaleVersionError,
)
from closures.models.base import ResourceDocument, utcnow

logger = logging.getLogger(__name__)


class ResourceStore(ABC):
    """
    Abstract base class for the resource store.

    Documents are addressed by their ``document_self_link``. Every write
    bumps ``document_version``; updates may carry the version the caller
    read so concurrent writers detect each other.
    """

    @abstractmethod
    async def create(self, document: ResourceDocument) -> ResourceDocument:
        """
        Persist a new document.

        Args:
            document: Document with its self link assigned.

        Returns:
            The stored document.

        Raises:
            DocumentExistsError: If the link is already taken.
        """
        ...

    @abstractmethod
    async def get(self, link: str) -> ResourceDocument:
        """
        Retrieve a document by link.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        ...

    @abstractmethod
    async def get_or_none(self, link: str) -> Optional[ResourceDocument]:
        """Retrieve a document by link or None if not found."""
        ...

    @abstractmethod
    async def update(
        self,
        document: ResourceDocument,
        expected_version: Optional[int] = None,
    ) -> ResourceDocument:
        """
        Replace an existing document.

        Args:
            document: The document with updated fields.
            expected_version: Version the caller read. If given and the
                persisted version differs, the write is rejected.

        Returns:
            The stored document with its new version.

        Raises:
            DocumentNotFoundError: If the document does not exist.
            StaleVersionError: If expected_version is stale.
        """
        ...

    @abstractmethod
    async def delete(self, link: str) -> bool:
        """
        Delete a document.

        Returns:
            True if the document was deleted, False if not found.
        """
        ...

    @abstractmethod
    async def list(
        self,
        prefix: str,
        predicate: Optional[Callable[[ResourceDocument], bool]] = None,
        limit: int = 100,
    ) -> list[ResourceDocument]:
        """
        List documents under a factory link.

        Args:
            prefix: Factory link, e.g. "/resources/closures".
            predicate: Optional filter.
            limit: Maximum number of documents to return.
        """
        ...

    @abstractmethod
    def subscribe(self, link: str) -> asyncio.Queue:
        """
        Watch a document.

        Every subsequent write pushes a snapshot to the returned queue; a
        delete pushes None.
        """
        ...

    @abstractmethod
    def unsubscribe(self, link: str, queue: asyncio.Queue) -> None:
        """Stop watching a document."""
        ...


class InMemoryResourceStore(ResourceStore):
    """
    In-memory resource store.

    Uses a dictionary guarded by an asyncio.Lock. Documents are copied on
    the way in and on the way out, so callers never share mutable state
    with the store.
    """

    def __init__(self):
        """Initialize the in-memory store."""
        self._documents: dict[str, ResourceDocument] = {}
        self._watchers: dict[str, list[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def create(self, document: ResourceDocument) -> ResourceDocument:
        link = document.document_self_link
        if not link:
            raise ValueError("Document has no self link")

        async with self._lock:
            if link in self._documents:
                raise DocumentExistsError(link)
            stored = document.model_copy(deep=True)
            stored.document_version = 0
            stored.document_update_time = utcnow()
            self._documents[link] = stored
            logger.debug(f"Created document {link}")
            return stored.model_copy(deep=True)

    async def get(self, link: str) -> ResourceDocument:
        async with self._lock:
            document = self._documents.get(link)
            if document is None:
                raise DocumentNotFoundError(link)
            return document.model_copy(deep=True)

    async def get_or_none(self, link: str) -> Optional[ResourceDocument]:
        async with self._lock:
            document = self._documents.get(link)
            return document.model_copy(deep=True) if document is not None else None

    async def update(
        self,
        document: ResourceDocument,
        expected_version: Optional[int] = None,
    ) -> ResourceDocument:
        link = document.document_self_link
        async with self._lock:
            current = self._documents.get(link) if link else None
            if current is None:
                raise DocumentNotFoundError(link or "")
            if (
                expected_version is not None
                and current.document_version != expected_version
            ):
                raise StaleVersionError(link, expected_version, current.document_version)

            stored = document.model_copy(deep=True)
            stored.document_version = current.document_version + 1
            stored.document_update_time = utcnow()
            self._documents[link] = stored
            self._notify(link, stored)
            return stored.model_copy(deep=True)

    async def delete(self, link: str) -> bool:
        async with self._lock:
            if link not in self._documents:
                return False
            del self._documents[link]
            self._notify(link, None)
            logger.debug(f"Deleted document {link}")
            return True

    async def list(
        self,
        prefix: str,
        predicate: Optional[Callable[[ResourceDocument], bool]] = None,
        limit: int = 100,
    ) -> list[ResourceDocument]:
        factory = prefix.rstrip("/") + "/"
        async with self._lock:
            documents = [
                doc
                for link, doc in self._documents.items()
                if link.startswith(factory) and (predicate is None or predicate(doc))
            ]
            return [doc.model_copy(deep=True) for doc in documents[:limit]]

    def subscribe(self, link: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(link, []).append(queue)
        return queue

    def unsubscribe(self, link: str, queue: asyncio.Queue) -> None:
        queues = self._watchers.get(link)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._watchers[link]

    def _notify(self, link: str, document: Optional[ResourceDocument]) -> None:
        for queue in self._watchers.get(link, []):
            queue.put_nowait(
                document.model_copy(deep=True) if document is not None else None
            )

    async def clear(self) -> None:
        """Clear all documents from the store. Useful for testing."""
        async with self._lock:
            self._documents.clear()

    @property
    def document_count(self) -> int:
        """Get the number of documents in the store."""
        return len(self._documents)
