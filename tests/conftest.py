"""
Pytest configuration and fixtures for the closure execution service tests.
"""

from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from closures.core.config import (
    DispatchConfig,
    DispatchProvider,
    ProvisioningConfig,
    ProvisioningProvider,
    Settings,
)
from closures.core.container import Container, clear_container_cache
from closures.main import app
from closures.models.description import ClosureDescription, ResourceConstraints
from closures.services.dispatch.mock import MockAdapterDispatcher
from closures.services.orchestrator import ClosureOrchestrator
from closures.services.provisioning.backend import InMemoryImageBackend
from closures.services.provisioning.provisioner import ImageProvisioner
from closures.services.registry import InMemoryRegistryClient
from closures.services.store import InMemoryResourceStore


@pytest.fixture(autouse=True)
def clear_caches() -> Generator[None, None, None]:
    """
    Clear all caches before and after each test.

    This ensures test isolation by resetting singleton state.
    """
    clear_container_cache()
    yield
    clear_container_cache()


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """
    Create a temporary config.yaml file for testing.

    Args:
        tmp_path: Pytest tmp_path fixture.

    Returns:
        Path to the temporary config file.
    """
    config_content = """
log_level: debug

provisioning:
  provider: "mock"
  image_prefix: "test/runtime-"
  platform_registry: "registry.platform.local:5000"

dispatch:
  provider: "mock"
  hosts:
    "/resources/group-placements/default-resource-placement":
      - "http://adapter-1:8282"
      - "http://adapter-2:8282"
    "/resources/group-placements/edge":
      - "http://edge-1:8282"

batch:
  max_concurrency: 4

properties:
  closure.runtime.image.registry.java: "https://hbr.local"
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return config_path


@pytest.fixture
def test_settings(temp_config_file: Path) -> Settings:
    """
    Create test settings from temporary config file.

    Args:
        temp_config_file: Path to temporary config file.

    Returns:
        Settings instance loaded from temporary config.
    """
    return Settings.from_yaml(temp_config_file)


@pytest.fixture
def test_container(test_settings: Settings) -> Container:
    """
    Create a test container with test settings.

    Args:
        test_settings: Test settings fixture.

    Returns:
        Container instance with test settings.
    """
    return Container(settings=test_settings)


@pytest.fixture
def mock_settings() -> Settings:
    """Settings with the in-memory provisioning backend and mock dispatcher."""
    return Settings(
        provisioning=ProvisioningConfig(provider=ProvisioningProvider.MOCK),
        dispatch=DispatchConfig(provider=DispatchProvider.MOCK),
    )


@pytest.fixture
def store() -> InMemoryResourceStore:
    """Create a fresh in-memory resource store."""
    return InMemoryResourceStore()


@pytest.fixture
def image_backend() -> InMemoryImageBackend:
    """Create an empty in-memory image backend."""
    return InMemoryImageBackend()


@pytest.fixture
def registry_client() -> InMemoryRegistryClient:
    """Create an in-memory registry client with the default repository table."""
    return InMemoryRegistryClient()


@pytest.fixture
def provisioner(
    image_backend: InMemoryImageBackend,
    registry_client: InMemoryRegistryClient,
    mock_settings: Settings,
) -> ImageProvisioner:
    """Create an image provisioner over the in-memory backend."""
    return ImageProvisioner(image_backend, registry_client, mock_settings)


@pytest.fixture
def dispatcher() -> MockAdapterDispatcher:
    """Create a mock dispatcher computing nodejs closures as a + 1."""
    return MockAdapterDispatcher(
        handlers={"nodejs": lambda inputs: {"result": inputs["a"] + 1}},
    )


@pytest.fixture
def orchestrator(
    store: InMemoryResourceStore,
    provisioner: ImageProvisioner,
    dispatcher: MockAdapterDispatcher,
    mock_settings: Settings,
) -> ClosureOrchestrator:
    """Create an orchestrator wired to in-memory collaborators."""
    return ClosureOrchestrator(store, provisioner, dispatcher, mock_settings)


@pytest.fixture
def sample_description() -> ClosureDescription:
    """A nodejs closure description adding one to its input."""
    return ClosureDescription(
        name="test",
        runtime="nodejs",
        source='function test(x) { return x + 1; }\nvar result = test(inputs["a"]);',
        inputs={"a": None},
        output_names=["result"],
        resources=ResourceConstraints(timeout_seconds=10),
    )


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Generator[TestClient, None, None]:
    """
    Create a test client for the FastAPI application.

    The application runs with the in-memory provisioning backend and the
    mock dispatcher.

    Yields:
        TestClient instance.
    """
    monkeypatch.setenv("PROVISIONING__PROVIDER", "mock")
    monkeypatch.setenv("DISPATCH__PROVIDER", "mock")
    clear_container_cache()
    with TestClient(app) as test_client:
        yield test_client
