"""
Pytest configuration and fixtures for converge tests.
"""

import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from converge.engine import ConvergenceEngine, MemoryStateBackend, NO_RETRY, ObservedState
from converge.providers import (
    InMemoryArtifactRegistry,
    InMemoryProvider,
    InMemorySecretStore,
    ProviderRegistry,
)
from converge.resources import Reference, Resource, ResourceKind


@pytest.fixture
def artifacts():
    """Empty in-memory artifact registry."""
    return InMemoryArtifactRegistry()


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


@pytest.fixture
def provider(artifacts):
    """In-memory control plane wired to the artifact registry."""
    return InMemoryProvider(artifacts=artifacts)


@pytest.fixture
def providers(provider, artifacts, secret_store):
    return ProviderRegistry(provider, artifacts=artifacts, secrets=secret_store)


@pytest.fixture
def engine(providers):
    """Engine without retry delays."""
    return ConvergenceEngine(providers, retry_policy=NO_RETRY)


@pytest.fixture
def observed():
    return ObservedState("test", MemoryStateBackend())


def web_stack(app: str = "app") -> list[Resource]:
    """
    Registry R, compute C pulling from R, edge E in front of C, DNS D aliasing E.
    """
    return [
        Resource(f"{app}-registry", ResourceKind.REGISTRY, {"repository_name": app}),
        Resource(
            f"{app}-service",
            ResourceKind.COMPUTE_SERVICE,
            {"image": Reference(f"{app}-registry", "repository_uri")},
        ),
        Resource(
            f"{app}-edge",
            ResourceKind.EDGE_DISTRIBUTION,
            {"origin": Reference(f"{app}-service", "endpoint")},
        ),
        Resource(
            f"{app}-dns",
            ResourceKind.DNS_RECORD,
            {
                "zone_name": "example.com",
                "record_name": "api",
                "target": Reference(f"{app}-edge", "domain_name"),
            },
        ),
    ]


@pytest.fixture
def stack():
    """Fresh declarations of the four-resource web stack."""
    return web_stack()
