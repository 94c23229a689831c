"""
Collaborator protocols for converge.

Defines the interfaces the core talks to:
- ResourceProvider: the cloud control plane (create/read/update/destroy/redeploy)
- ArtifactRegistry: tag lookups for bootstrap checks and release triggers
- SecretStore: access grants for a compute resource's execution identity

Provider calls must be idempotent by stable identifier: a retried create
of an existing resource is a successful no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from converge.resources import ResourceKind


@dataclass
class RedeployReceipt:
    """
    Confirmation returned by a redeploy request.

    Attributes:
        started: True once the provider has accepted and started the rollout
        operation_id: Provider-side operation handle
        digest: Digest the rollout targets
    """

    started: bool
    operation_id: Optional[str] = None
    digest: Optional[str] = None
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "operation_id": self.operation_id,
            "digest": self.digest,
            "requested_at": self.requested_at.isoformat(),
        }


@dataclass
class ProviderSnapshot:
    """What the provider reports about an existing resource."""

    identifier: str
    kind: ResourceKind
    attributes: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ResourceProvider(Protocol):
    """
    Protocol for the cloud control plane.

    Implementations:
    - InMemoryProvider (tests, dry runs)
    - ControlPlaneClient (REST control plane over httpx)
    """

    @property
    def name(self) -> str:
        """Provider name for logging."""
        ...

    async def create(
        self, identifier: str, kind: ResourceKind, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create the resource and return its outputs."""
        ...

    async def read(self, identifier: str, kind: ResourceKind) -> Optional[ProviderSnapshot]:
        """Return the current provider view, or None if absent."""
        ...

    async def update(
        self, identifier: str, kind: ResourceKind, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update the resource and return its outputs."""
        ...

    async def destroy(self, identifier: str, kind: ResourceKind) -> None:
        """Destroy the resource. Destroying an absent resource succeeds."""
        ...

    async def redeploy(self, identifier: str, digest: str) -> RedeployReceipt:
        """Start a rollout of `digest` on a compute resource."""
        ...


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Protocol for the artifact registry."""

    @property
    def name(self) -> str:
        ...

    async def has_artifact(self, repository: str, tag: str) -> bool:
        """Does `tag` currently point at a known artifact?"""
        ...

    async def resolve_tag(self, repository: str, tag: str) -> Optional[str]:
        """Digest `tag` points at, or None."""
        ...


@runtime_checkable
class SecretStore(Protocol):
    """
    Protocol for the secret store.

    Only grants are managed here. Fetching values happens in the
    compute runtime and is never called by converge.
    """

    @property
    def name(self) -> str:
        ...

    async def grant_access(self, store: str, identifier: str, principal: str) -> None:
        """
        Attach read access for `principal`. Granting twice succeeds.

        Raises:
            SecretNotFound: locator unknown
            AccessDenied: grant refused
        """
        ...
