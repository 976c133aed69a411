"""
Multi-resource creation.

Creates a batch of resources concurrently with all-or-nothing semantics:
if any creation fails, every resource the batch did create is deleted
again and a single CreateFailed is raised.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import yaml
from pydantic import ValidationError as PydanticValidationError

from closures.core.exceptions import ClosureError, CreateFailed, ValidationError
from closures.models.description import ClosureDescription
from closures.services.orchestrator import ClosureOrchestrator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchMaterializer:
    """
    Concurrent all-or-nothing creation of resources.

    Usage:
        materializer = BatchMaterializer(max_concurrency=10)
        links = await materializer.create_all(items, create, delete)
    """

    def __init__(self, max_concurrency: int = 10):
        """
        Initialize the materializer.

        Args:
            max_concurrency: Maximum number of creations in flight at once.
        """
        self._max_concurrency = max_concurrency

    async def create_all(
        self,
        items: Sequence[T],
        create: Callable[[T], Awaitable[str]],
        delete: Callable[[str], Awaitable[Any]],
        failure_message: str = "Failed to create resources.",
    ) -> list[str]:
        """
        Create every item, or none.

        All creations are launched concurrently and joined. Specs are not
        deduplicated; each one is created.

        Args:
            items: Resource definitions to create.
            create: Creates one resource and returns its link.
            delete: Deletes a resource by link.
            failure_message: Message of the CreateFailed raised on failure.

        Returns:
            Links of the created resources, in input order.

        Raises:
            CreateFailed: If any creation failed. The resources that were
                created have been deleted again.
        """
        if not items:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded_create(item: T) -> str:
            async with semaphore:
                return await create(item)

        results = await asyncio.gather(
            *(_bounded_create(item) for item in items),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if not errors:
            return created

        logger.warning(
            f"{len(errors)} of {len(items)} creations failed, "
            f"removing {len(created)} created resources"
        )
        await self._compensate(created, delete)
        raise CreateFailed(failure_message, [_describe(e) for e in errors])

    async def _compensate(
        self,
        links: list[str],
        delete: Callable[[str], Awaitable[Any]],
    ) -> None:
        """Delete created resources concurrently; failures are logged."""
        if not links:
            return
        results = await asyncio.gather(
            *(delete(link) for link in links),
            return_exceptions=True,
        )
        for link, result in zip(links, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to remove {link} while rolling back: {result}")


class DescriptionContentService:
    """
    Create closure descriptions from a multi-document YAML body.

    Documents are separated by lines consisting of ``---``. Either every
    document becomes a closure description or none does.
    """

    def __init__(
        self,
        orchestrator: ClosureOrchestrator,
        materializer: BatchMaterializer,
        document_separator: str = "---",
    ):
        self._orchestrator = orchestrator
        self._materializer = materializer
        self._separator = document_separator

    async def create_from_content(self, body: Optional[str]) -> list[str]:
        """
        Create one closure description per YAML document.

        Args:
            body: Multi-document YAML text.

        Returns:
            Links of the created descriptions, in document order.

        Raises:
            ValidationError: If the body is empty.
            CreateFailed: If any document could not be parsed or created.
        """
        if body is None or not body.strip():
            raise ValidationError("body is required")

        documents = split_documents(body, self._separator)
        if not documents:
            raise ValidationError("body is required")

        return await self._materializer.create_all(
            documents,
            self._create_one,
            self._orchestrator.delete_description,
            failure_message="Failed to create closure descriptions.",
        )

    async def _create_one(self, document: str) -> str:
        try:
            data = yaml.safe_load(document)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML document: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("Each document must be a mapping")

        try:
            description = ClosureDescription.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid closure description: {e}") from e

        created = await self._orchestrator.create_description(description)
        return created.document_self_link


def split_documents(body: str, separator: str = "---") -> list[str]:
    """Split text on separator lines, dropping empty documents."""
    documents: list[str] = []
    current: list[str] = []
    for line in body.splitlines():
        if line.strip() == separator:
            documents.append("\n".join(current))
            current = []
        else:
            current.append(line)
    documents.append("\n".join(current))
    return [doc for doc in documents if doc.strip()]


def _describe(error: BaseException) -> str:
    if isinstance(error, ClosureError):
        return error.message
    return f"{type(error).__name__}: {error}"
