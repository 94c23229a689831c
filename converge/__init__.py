"""
converge - Dependency-ordered provisioning for a small cloud resource graph.

converge keeps a declared set of cloud resources (artifact registry,
compute service, TLS certificate, edge distribution, DNS record, secrets,
deployment pipeline) converged with what actually exists:

- **Dependency Graph**: Typed references between resources, ordered
  topologically, with bootstrap edges for the registry/pipeline loop
- **Planning**: create / update / destroy / no-op per resource, blocked
  resources reported with a reason
- **Convergence Engine**: Bounded parallel apply with per-resource
  lifecycle state, failure isolation and replan passes
- **Release Trigger**: Redeploys compute when its release tag moves
- **Secret Binding**: Secrets stay locators; access is granted to the
  compute execution identity

Quick Start:
    >>> from converge.config import standard_topology
    >>> from converge.engine import ConvergenceEngine, MemoryStateBackend, ObservedState
    >>> from converge.providers import InMemoryArtifactRegistry, InMemoryProvider, ProviderRegistry
    >>>
    >>> artifacts = InMemoryArtifactRegistry()
    >>> engine = ConvergenceEngine(
    ...     ProviderRegistry(InMemoryProvider(artifacts=artifacts), artifacts=artifacts)
    ... )
    >>> observed = await ObservedState.load(MemoryStateBackend(), "production")
    >>> result = await engine.converge(standard_topology("app", zone_name="example.com"), observed)
    >>> result.table()
"""

__version__ = "0.1.0"
__author__ = "Kuzushi Labs"
__license__ = "MIT"

# Core exports for convenient imports
from converge.engine import ApplyResult, ConvergenceEngine, ObservedState, Plan
from converge.graph import GraphResolver, ResourceGraph
from converge.release import ReleaseTrigger, ReleaseWatcher
from converge.resources import Reference, Resource, ResourceKind, SecretReference

__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Declarations
    "Reference",
    "Resource",
    "ResourceKind",
    "SecretReference",
    # Graph
    "GraphResolver",
    "ResourceGraph",
    # Engine
    "ApplyResult",
    "ConvergenceEngine",
    "ObservedState",
    "Plan",
    # Release
    "ReleaseTrigger",
    "ReleaseWatcher",
]
