"""
Provider Registry for converge.

Maps resource kinds to the control-plane provider that manages them and
holds the artifact registry and secret store collaborators.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from converge.errors import ProviderError
from converge.resources import ResourceKind

from .base import ArtifactRegistry, ResourceProvider, SecretStore
from .health import HealthCheckResult, ProviderHealthChecker

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of collaborators.

    A default provider serves every kind without an explicit registration.

    Usage:
        registry = ProviderRegistry(
            ControlPlaneClient(config),
            artifacts=OCIRegistryClient(registry_url),
            secrets=ControlPlaneClient(config),
        )
        registry.register(ResourceKind.DNS_RECORD, dns_provider)

        provider = registry.get(ResourceKind.COMPUTE_SERVICE)
    """

    def __init__(
        self,
        default: ResourceProvider | None = None,
        *,
        artifacts: ArtifactRegistry | None = None,
        secrets: SecretStore | None = None,
    ):
        self._default = default
        self._by_kind: dict[ResourceKind, ResourceProvider] = {}
        self.artifacts = artifacts
        self.secrets = secrets
        self._health_checker = ProviderHealthChecker()

    def _validate(self, provider: ResourceProvider) -> None:
        for method in ("create", "read", "update", "destroy", "redeploy"):
            if not callable(getattr(provider, method, None)):
                raise ValueError(f"Provider must have '{method}' method")

    def register(self, kind: ResourceKind, provider: ResourceProvider) -> None:
        self._validate(provider)
        self._by_kind[kind] = provider
        logger.info(f"Registered provider '{provider.name}' for {kind.value}")

    @property
    def default(self) -> ResourceProvider | None:
        return self._default

    def set_default(self, provider: ResourceProvider) -> None:
        self._validate(provider)
        self._default = provider

    def get(self, kind: ResourceKind) -> ResourceProvider:
        provider = self._by_kind.get(kind, self._default)
        if provider is None:
            raise ProviderError(f"No provider registered for {kind.value}", "registry")
        return provider

    def list_providers(self) -> dict[str, Any]:
        return {
            "default": self._default.name if self._default else None,
            "by_kind": {kind.value: p.name for kind, p in self._by_kind.items()},
            "artifacts": self.artifacts.name if self.artifacts else None,
            "secrets": self.secrets.name if self.secrets else None,
        }

    async def check_health(self) -> list[HealthCheckResult]:
        """Check every distinct collaborator concurrently."""
        targets: list[tuple[Any, str]] = []
        seen: set[int] = set()
        for provider in [self._default, *self._by_kind.values()]:
            if provider is not None and id(provider) not in seen:
                seen.add(id(provider))
                targets.append((provider, "control_plane"))
        if self.artifacts is not None:
            targets.append((self.artifacts, "artifacts"))
        if self.secrets is not None and id(self.secrets) not in seen:
            targets.append((self.secrets, "secrets"))

        return list(
            await asyncio.gather(
                *(self._health_checker.check(p, t) for p, t in targets)
            )
        )

    def __repr__(self) -> str:
        return f"ProviderRegistry({self.list_providers()})"
