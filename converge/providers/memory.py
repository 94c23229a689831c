"""
In-memory collaborators.

Deterministic stand-ins for the control plane, artifact registry and
secret store. Used by tests and by dry runs of a stack.

Usage:
    artifacts = InMemoryArtifactRegistry()
    artifacts.publish("api", "production", "sha256:aaa")

    provider = InMemoryProvider(artifacts=artifacts)
    engine = ConvergenceEngine(providers=ProviderRegistry(provider), ...)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from converge.errors import AccessDenied, ProviderError, SecretNotFound
from converge.resources import ResourceKind

from .base import ProviderSnapshot, RedeployReceipt

logger = logging.getLogger(__name__)


def _short_hash(value: str, length: int = 12) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:length]


def _resource_name(identifier: str) -> str:
    return identifier.split(".", 1)[-1]


@dataclass
class ProviderCall:
    """One recorded provider call."""

    operation: str
    identifier: str
    kind: ResourceKind | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class InMemoryProvider:
    """
    In-memory control plane.

    Features:
    - Idempotent create (an existing identifier returns its outputs)
    - Failure injection per identifier and operation
    - Optional latency to exercise concurrent applies
    - Call log and peak concurrency for assertions
    """

    def __init__(
        self,
        *,
        name: str = "memory",
        artifacts: InMemoryArtifactRegistry | None = None,
        latency: float = 0.0,
    ):
        self._name = name
        self._artifacts = artifacts
        self._latency = latency
        self.resources: dict[str, ProviderSnapshot] = {}
        self.calls: list[ProviderCall] = []
        self.extra_outputs: dict[str, dict[str, Any]] = {}
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._redeploy_results: list[RedeployReceipt | Exception] = []
        self._in_flight = 0
        self.peak_concurrency = 0

    @property
    def name(self) -> str:
        return self._name

    # ==================== Test Hooks ====================

    def fail(self, operation: str, identifier: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of `operation` on `identifier`."""
        self._failures.setdefault((operation, identifier), []).extend(errors)

    def queue_redeploy_result(self, result: RedeployReceipt | Exception) -> None:
        self._redeploy_results.append(result)

    def calls_for(self, operation: str, identifier: str | None = None) -> list[ProviderCall]:
        return [
            c for c in self.calls
            if c.operation == operation and (identifier is None or c.identifier == identifier)
        ]

    # ==================== Protocol ====================

    async def create(
        self, identifier: str, kind: ResourceKind, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._track("create", identifier, kind, attributes):
            existing = self.resources.get(identifier)
            if existing is not None:
                logger.debug(f"[{self.name}] {identifier} already exists, create is a no-op")
                return dict(existing.outputs)
            outputs = self._generate_outputs(identifier, kind, attributes)
            self.resources[identifier] = ProviderSnapshot(
                identifier=identifier,
                kind=kind,
                attributes=dict(attributes),
                outputs=outputs,
            )
            return dict(outputs)

    async def read(self, identifier: str, kind: ResourceKind) -> ProviderSnapshot | None:
        async with self._track("read", identifier, kind):
            return self.resources.get(identifier)

    async def update(
        self, identifier: str, kind: ResourceKind, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._track("update", identifier, kind, attributes):
            existing = self.resources.get(identifier)
            if existing is None:
                raise ProviderError(f"{identifier} does not exist", self.name, status_code=404)
            existing.attributes = dict(attributes)
            existing.outputs = self._generate_outputs(identifier, kind, attributes)
            return dict(existing.outputs)

    async def destroy(self, identifier: str, kind: ResourceKind) -> None:
        async with self._track("destroy", identifier, kind):
            self.resources.pop(identifier, None)

    async def redeploy(self, identifier: str, digest: str) -> RedeployReceipt:
        async with self._track("redeploy", identifier, None, {"digest": digest}):
            if self._redeploy_results:
                result = self._redeploy_results.pop(0)
                if isinstance(result, Exception):
                    raise result
                return result
            if identifier not in self.resources:
                raise ProviderError(f"{identifier} does not exist", self.name, status_code=404)
            self.resources[identifier].outputs["image_digest"] = digest
            return RedeployReceipt(
                started=True,
                operation_id=f"op-{_short_hash(identifier + digest, 8)}",
                digest=digest,
            )

    # ==================== Internals ====================

    def _track(
        self,
        operation: str,
        identifier: str,
        kind: ResourceKind | None,
        payload: dict[str, Any] | None = None,
    ) -> _CallScope:
        self.calls.append(ProviderCall(operation, identifier, kind, dict(payload or {})))
        return _CallScope(self, operation, identifier)

    def _generate_outputs(
        self, identifier: str, kind: ResourceKind, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        name = _resource_name(identifier)
        token = _short_hash(identifier)
        outputs: dict[str, Any]
        if kind == ResourceKind.REGISTRY:
            outputs = {"repository_arn": f"arn:memory:registry:{name}"}
        elif kind == ResourceKind.SECRET:
            outputs = {"arn": f"arn:memory:secret:{name}"}
        elif kind == ResourceKind.CERTIFICATE:
            outputs = {"arn": f"arn:memory:certificate:{token}", "status": "ISSUED"}
        elif kind == ResourceKind.COMPUTE_SERVICE:
            outputs = {
                "endpoint": f"{name}-{token[:8]}.compute.internal",
                "service_arn": f"arn:memory:service:{name}",
                "execution_role": f"arn:memory:role:{name}-instance",
            }
            digest = self._current_digest(attributes)
            if digest:
                outputs["image_digest"] = digest
        elif kind == ResourceKind.EDGE_DISTRIBUTION:
            outputs = {"domain_name": f"d{token}.edge.example.net", "distribution_id": token.upper()}
        elif kind == ResourceKind.DNS_RECORD:
            outputs = {"change_id": f"C{token.upper()}"}
        else:
            outputs = {"pipeline_arn": f"arn:memory:pipeline:{name}"}
        outputs.update(self.extra_outputs.get(identifier, {}))
        return outputs

    def _current_digest(self, attributes: dict[str, Any]) -> str | None:
        if self._artifacts is None:
            return None
        image = attributes.get("image")
        if not isinstance(image, str):
            return None
        repository = image.rsplit("/", 1)[-1]
        return self._artifacts.digests.get((repository, attributes.get("image_tag", "production")))


class _CallScope:
    """Applies latency, injected failures and concurrency tracking to one call."""

    def __init__(self, provider: InMemoryProvider, operation: str, identifier: str):
        self._provider = provider
        self._key = (operation, identifier)

    async def __aenter__(self) -> _CallScope:
        provider = self._provider
        provider._in_flight += 1
        provider.peak_concurrency = max(provider.peak_concurrency, provider._in_flight)
        try:
            if provider._latency:
                await asyncio.sleep(provider._latency)
            queued = provider._failures.get(self._key)
            if queued:
                raise queued.pop(0)
        except BaseException:
            provider._in_flight -= 1
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._provider._in_flight -= 1


class InMemoryArtifactRegistry:
    """In-memory tag → digest map."""

    def __init__(self, name: str = "memory-registry"):
        self._name = name
        self.digests: dict[tuple[str, str], str] = {}
        self.lookups: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    def publish(self, repository: str, tag: str, digest: str) -> None:
        """Point `tag` at `digest` (what a build pipeline or a human would do)."""
        self.digests[(repository, tag)] = digest

    def remove(self, repository: str, tag: str) -> None:
        self.digests.pop((repository, tag), None)

    async def has_artifact(self, repository: str, tag: str) -> bool:
        self.lookups.append((repository, tag))
        return (repository, tag) in self.digests

    async def resolve_tag(self, repository: str, tag: str) -> str | None:
        self.lookups.append((repository, tag))
        return self.digests.get((repository, tag))


class InMemorySecretStore:
    """In-memory secret store that only tracks locators and grants."""

    def __init__(self, name: str = "memory-secrets"):
        self._name = name
        self._locators: set[tuple[str, str]] = set()
        self._denied: set[tuple[str, str]] = set()
        self.grants: dict[tuple[str, str], set[str]] = {}

    @property
    def name(self) -> str:
        return self._name

    def add(self, store: str, identifier: str) -> None:
        self._locators.add((store, identifier))

    def deny(self, store: str, identifier: str) -> None:
        self._denied.add((store, identifier))

    async def grant_access(self, store: str, identifier: str, principal: str) -> None:
        key = (store, identifier)
        if key not in self._locators:
            raise SecretNotFound(store, identifier)
        if key in self._denied:
            raise AccessDenied(store, identifier)
        self.grants.setdefault(key, set()).add(principal)
