"""
Closure services module.

Provides the resource store, registry clients, image provisioning, adapter
dispatch, the closure orchestrator and batch creation.
"""

from closures.services.batch import (
    BatchMaterializer,
    DescriptionContentService,
    split_documents,
)
from closures.services.orchestrator import ClosureOrchestrator
from closures.services.registry import (
    HttpRegistryClient,
    InMemoryRegistryClient,
    RegistryClient,
    RegistryError,
    RegistryProjectNotFound,
    RegistryUnavailable,
)
from closures.services.store import InMemoryResourceStore, ResourceStore

__all__ = [
    # Store
    "ResourceStore",
    "InMemoryResourceStore",
    # Registry
    "RegistryClient",
    "HttpRegistryClient",
    "InMemoryRegistryClient",
    "RegistryError",
    "RegistryProjectNotFound",
    "RegistryUnavailable",
    # Orchestrator
    "ClosureOrchestrator",
    # Batch
    "BatchMaterializer",
    "DescriptionContentService",
    "split_documents",
]
