"""
Image provisioning services.

Provides image backend implementations and the image provisioner.
"""

from closures.services.provisioning.backend import ImageBackend, InMemoryImageBackend
from closures.services.provisioning.docker_backend import DockerImageBackend
from closures.services.provisioning.provisioner import ImageProvisioner

__all__ = [
    # Backends
    "ImageBackend",
    "InMemoryImageBackend",
    "DockerImageBackend",
    # Provisioner
    "ImageProvisioner",
]
