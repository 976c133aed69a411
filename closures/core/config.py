"""
Configuration loader for the closure execution service.

Loads configuration from config.yaml and environment variables using pydantic-settings.
Supports provisioning/dispatch/batch sections plus a flat map of configuration
properties (used for per-runtime registry lookups).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Configuration property prefix for per-runtime image registries.
# The full key is the prefix followed by the runtime kind, e.g.
# "closure.runtime.image.registry.nodejs".
RUNTIME_IMAGE_REGISTRY_PREFIX = "closure.runtime.image.registry."

DEFAULT_RESOURCE_PLACEMENT = "/resources/group-placements/default-resource-placement"


class ProvisioningProvider(str, Enum):
    """Supported image provisioning backends."""

    DOCKER = "docker"
    MOCK = "mock"


class DispatchProvider(str, Enum):
    """Supported adapter dispatchers."""

    HTTP = "http"
    LOCAL = "local"
    MOCK = "mock"


class ProvisioningConfig(BaseModel):
    """
    Runtime image provisioning configuration.

    Example config.yaml:
        provisioning:
          provider: docker
          image_prefix: "closures/runtime-"
          platform_registry: "registry.platform.local:5000"
          base_images:
            nodejs: "node:20-alpine"
    """

    provider: ProvisioningProvider = Field(
        default=ProvisioningProvider.DOCKER,
        description="Image provisioning backend to use",
    )
    docker_socket_url: Optional[str] = Field(
        default=None,
        description="Docker socket URL (e.g., 'unix:///var/run/docker.sock'). "
                    "If None, uses aiodocker default.",
    )
    image_prefix: str = Field(
        default="closures/runtime-",
        description="Prefix of runtime image names",
    )
    image_tag: str = Field(
        default="latest",
        description="Tag of runtime images",
    )
    platform_registry: Optional[str] = Field(
        default=None,
        description="Registry the platform pulls its own runtime images from. "
                    "If None, the compute host's default registry is used.",
    )
    base_images: dict[str, str] = Field(
        default_factory=lambda: {
            "nodejs": "node:20-alpine",
            "python": "python:3.12-alpine",
            "powershell": "mcr.microsoft.com/powershell:latest",
            "java": "eclipse-temurin:21-jre-alpine",
        },
        description="Base image per runtime kind, used when building runtime images",
    )
    reclaim_unused_images: bool = Field(
        default=True,
        description="Remove runtime images once no closure references them",
    )


class DispatchConfig(BaseModel):
    """Adapter dispatch configuration."""

    provider: DispatchProvider = Field(
        default=DispatchProvider.HTTP,
        description="Adapter dispatcher to use",
    )
    default_placement: str = Field(
        default=DEFAULT_RESOURCE_PLACEMENT,
        description="Placement used when neither closure nor description names one",
    )
    hosts: dict[str, list[str]] = Field(
        default_factory=lambda: {
            DEFAULT_RESOURCE_PLACEMENT: ["http://localhost:8282"],
        },
        description="Compute host adapter URLs per placement link",
    )
    request_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Extra seconds granted to adapter requests beyond the closure timeout",
    )
    python_executable: str = Field(
        default="python",
        description="Python executable used by the local dispatcher",
    )
    node_executable: str = Field(
        default="node",
        description="Node.js executable used by the local dispatcher",
    )

    @field_validator("hosts")
    @classmethod
    def validate_hosts(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Reject placements without any compute host."""
        for placement, urls in v.items():
            if not urls:
                raise ValueError(f"Placement '{placement}' has no compute hosts")
        return v


class BatchConfig(BaseModel):
    """Multi-resource creation configuration."""

    max_concurrency: int = Field(
        default=10,
        ge=1,
        description="Maximum number of concurrent creations in one batch",
    )
    document_separator: str = Field(
        default="---",
        description="Line separating documents in a multi-document submission",
    )


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables and config.yaml.

    Priority (highest to lowest):
    1. config.yaml file (passed as init values by from_yaml)
    2. Environment variables (from .env file or system)
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="Closure Execution Service",
        description="Application name",
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version",
    )
    debug: bool = Field(
        default=False,
        description="Debug mode",
        alias="APP_DEBUG",
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level",
    )

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug_bool(cls, v):
        """Handle empty string as False for boolean debug field."""
        if v == "" or v is None:
            return False
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept log levels in any case."""
        if isinstance(v, str):
            return v.upper()
        return v

    provisioning: ProvisioningConfig = Field(
        default_factory=ProvisioningConfig,
        description="Runtime image provisioning configuration",
    )
    dispatch: DispatchConfig = Field(
        default_factory=DispatchConfig,
        description="Adapter dispatch configuration",
    )
    batch: BatchConfig = Field(
        default_factory=BatchConfig,
        description="Multi-resource creation configuration",
    )
    properties: dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Flat configuration properties (e.g. per-runtime registries)",
    )

    def get_registry_for(self, runtime: str) -> Optional[str]:
        """
        Look up the image registry configured for a runtime kind.

        Args:
            runtime: Runtime kind value (e.g. "nodejs").

        Returns:
            Registry URL, or None when the platform-local default applies.
        """
        value = self.properties.get(RUNTIME_IMAGE_REGISTRY_PREFIX + runtime)
        return value or None

    def set_registry_for(self, runtime: str, registry_url: Optional[str]) -> None:
        """Configure (or clear, with None) the registry of a runtime kind."""
        self.properties[RUNTIME_IMAGE_REGISTRY_PREFIX + runtime] = registry_url

    @classmethod
    def from_yaml(cls, config_path: Path | str | None = None) -> "Settings":
        """
        Load settings from a YAML configuration file.

        Args:
            config_path: Path to config.yaml file. If None, looks for config.yaml
                        in the current directory and project root.

        Returns:
            Settings instance with values from YAML merged with env vars.
        """
        config_data: dict = {}

        if config_path is None:
            search_paths = [
                Path.cwd() / "config.yaml",
                Path(__file__).parent.parent.parent / "config.yaml",
            ]
            for path in search_paths:
                if path.exists():
                    config_path = path
                    break

        if config_path is not None:
            config_path = Path(config_path)
            if config_path.exists():
                with open(config_path, encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}

        return cls(**config_data)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings.from_yaml()
