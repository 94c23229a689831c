"""
Release Trigger.

Rolls a compute resource onto the artifact its release tag currently
points at, without running a plan/apply:

    1. read the tag's digest from the artifact registry
    2. compare with the digest cached on the compute resource
    3. if different, ask the provider to redeploy
    4. cache the new digest once the provider confirms the rollout started

Invoking it again with an unchanged digest does nothing. A redeploy that
did not start leaves the cache as it was, so the next invocation tries
again.

The trigger never waits on a resource a convergence action holds: it
reports `busy` and leaves the work to its next invocation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from converge.engine.bootstrap import DEFAULT_TAG, artifact_sources
from converge.engine.locks import ResourceLocks
from converge.engine.observability import ConvergenceLogger
from converge.engine.state import ObservedState
from converge.errors import DeclarationError, ProviderError, ResourceBusy
from converge.providers.base import ArtifactRegistry, ResourceProvider
from converge.resources import Resource, ResourceKind

logger = logging.getLogger(__name__)


class TriggerStatus(str, Enum):
    """Result of one trigger invocation."""

    REDEPLOYED = "redeployed"
    UNCHANGED = "unchanged"
    BUSY = "busy"
    NOT_STARTED = "not-started"
    NOT_ACTIVE = "not-active"
    MISSING_TAG = "missing-tag"
    FAILED = "failed"


@dataclass
class TriggerResult:
    """Outcome of a release trigger invocation."""

    resource: str
    status: TriggerStatus
    digest: str | None = None
    previous_digest: str | None = None
    operation_id: str | None = None
    error: str | None = None

    @property
    def redeployed(self) -> bool:
        return self.status == TriggerStatus.REDEPLOYED

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "status": self.status.value,
            "digest": self.digest,
            "previous_digest": self.previous_digest,
            "operation_id": self.operation_id,
            "error": self.error,
        }


class ReleaseTrigger:
    """
    Tag-based redeploy for one compute resource.

    Usage:
        trigger = ReleaseTrigger(
            "api", "api", "production",
            observed=observed, provider=provider, artifacts=registry, locks=engine.locks,
        )
        result = await trigger.invoke()
    """

    def __init__(
        self,
        resource: str,
        repository: str,
        tag: str = DEFAULT_TAG,
        *,
        observed: ObservedState,
        provider: ResourceProvider,
        artifacts: ArtifactRegistry,
        locks: ResourceLocks,
    ):
        self.resource = resource
        self.repository = repository
        self.tag = tag
        self.observed = observed
        self.provider = provider
        self.artifacts = artifacts
        self.locks = locks
        self._log = ConvergenceLogger(
            run_id=f"release-{resource}", environment=observed.environment
        )

    @classmethod
    def for_resource(
        cls,
        resource: Resource,
        resources: Mapping[str, Resource],
        **kwargs: Any,
    ) -> ReleaseTrigger:
        """Build a trigger from a compute resource's image reference."""
        if resource.kind != ResourceKind.COMPUTE_SERVICE:
            raise DeclarationError(
                f"Release triggers apply to compute resources, not '{resource.name}'"
            )
        sources = artifact_sources(resource, resources)
        if not sources:
            raise DeclarationError(f"'{resource.name}' does not pull from a declared registry")
        source = sources[0]
        return cls(resource.name, source.repository, source.tag, **kwargs)

    def matches(self, repository: str, tag: str) -> bool:
        return self.repository == repository and self.tag == tag

    async def invoke(self) -> TriggerResult:
        try:
            async with self.locks.try_hold(self.resource):
                result = await self._invoke()
        except ResourceBusy:
            logger.info(f"[release] {self.resource} is busy, retrying on next invocation")
            result = TriggerResult(self.resource, TriggerStatus.BUSY)

        self._log.release_triggered(
            self.resource, result.status.value, result.digest, result.previous_digest
        )
        return result

    async def _invoke(self) -> TriggerResult:
        record = self.observed.get(self.resource)
        if record is None or not record.is_active:
            return TriggerResult(self.resource, TriggerStatus.NOT_ACTIVE)

        previous = record.current_digest
        try:
            digest = await self.artifacts.resolve_tag(self.repository, self.tag)
        except ProviderError as e:
            return TriggerResult(
                self.resource, TriggerStatus.FAILED, previous_digest=previous, error=str(e)
            )

        if digest is None:
            return TriggerResult(self.resource, TriggerStatus.MISSING_TAG, previous_digest=previous)
        if digest == previous:
            return TriggerResult(self.resource, TriggerStatus.UNCHANGED, digest, previous)

        try:
            receipt = await self.provider.redeploy(record.identifier, digest)
        except ProviderError as e:
            logger.warning(f"[release] Redeploy of {self.resource} to {digest} failed: {e}")
            return TriggerResult(
                self.resource, TriggerStatus.FAILED, digest, previous, error=str(e)
            )

        if not receipt.started:
            logger.warning(f"[release] Redeploy of {self.resource} to {digest} did not start")
            return TriggerResult(
                self.resource,
                TriggerStatus.NOT_STARTED,
                digest,
                previous,
                operation_id=receipt.operation_id,
            )

        self.observed.set_digest(self.resource, digest)
        await self.observed.checkpoint()
        logger.info(f"[release] {self.resource} redeploying {previous} -> {digest}")
        return TriggerResult(
            self.resource,
            TriggerStatus.REDEPLOYED,
            digest,
            previous,
            operation_id=receipt.operation_id,
        )
