"""
Collaborators: control plane, artifact registry and secret store.
"""

from .base import (
    ArtifactRegistry,
    ProviderSnapshot,
    RedeployReceipt,
    ResourceProvider,
    SecretStore,
)
from .health import HealthCheckResult, HealthStatus, ProviderHealthChecker
from .http import ControlPlaneClient, HttpClientConfig, HttpCollaborator
from .memory import InMemoryArtifactRegistry, InMemoryProvider, InMemorySecretStore
from .oci import OCIRegistryClient
from .registry import ProviderRegistry

__all__ = [
    # Protocols
    "ArtifactRegistry",
    "ResourceProvider",
    "SecretStore",
    # Types
    "ProviderSnapshot",
    "RedeployReceipt",
    # Health
    "HealthCheckResult",
    "HealthStatus",
    "ProviderHealthChecker",
    # Implementations
    "ControlPlaneClient",
    "HttpClientConfig",
    "HttpCollaborator",
    "InMemoryArtifactRegistry",
    "InMemoryProvider",
    "InMemorySecretStore",
    "OCIRegistryClient",
    # Registry
    "ProviderRegistry",
]
