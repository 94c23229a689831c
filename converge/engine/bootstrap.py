"""
Bootstrap Sequencer.

A compute resource pulls its image from a registry that the same stack
creates, while the pipeline that would publish the first image deploys
to that compute resource. The loop is broken by a one-off manual step:
a placeholder artifact is published at the registry's release tag
before the compute resource is converged for the first time.

The sequencer verifies that step and never performs it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from converge.errors import BootstrapRequired
from converge.resources import Resource, ResourceKind, iter_references, spec_for

if TYPE_CHECKING:
    from converge.providers.base import ArtifactRegistry

    from .state import ObservedState

logger = logging.getLogger(__name__)

DEFAULT_TAG = "production"


@dataclass(frozen=True)
class ArtifactSource:
    """Registry location a resource pulls its artifact from."""

    resource: str
    registry: str
    repository: str
    tag: str


def artifact_sources(resource: Resource, resources: Mapping[str, Resource]) -> list[ArtifactSource]:
    """Registries referenced from the kind's artifact attribute, with the tag pulled."""
    spec = spec_for(resource.kind)
    if spec.artifact_attribute is None:
        return []

    attributes = spec.with_defaults(resource.attributes)
    tag = attributes.get("image_tag")
    if not isinstance(tag, str) or not tag:
        tag = DEFAULT_TAG

    found: list[ArtifactSource] = []
    for ref in iter_references(attributes.get(spec.artifact_attribute)):
        target = resources.get(ref.target)
        if target is None or target.kind != ResourceKind.REGISTRY:
            continue
        repository = spec_for(ResourceKind.REGISTRY).early_outputs(target)["repository_name"]
        found.append(ArtifactSource(resource.name, target.name, repository, tag))
    return found


class BootstrapSequencer:
    """
    Checks placeholder artifacts for resources that were never active.

    Example:
        sequencer = BootstrapSequencer(artifacts)
        await sequencer.check(api, resources, observed)  # may raise BootstrapRequired
    """

    def __init__(self, artifacts: ArtifactRegistry | None):
        self.artifacts = artifacts

    def needs_check(self, resource: Resource, observed: ObservedState) -> bool:
        record = observed.get(resource.name)
        return record is None or not record.ever_active

    async def check(
        self,
        resource: Resource,
        resources: Mapping[str, Resource],
        observed: ObservedState,
    ) -> None:
        """
        Raises:
            BootstrapRequired: A placeholder artifact is missing, or there is
                no artifact registry to verify it with
        """
        if not self.needs_check(resource, observed):
            return

        sources = artifact_sources(resource, resources)
        if not sources:
            return

        for source in sources:
            if self.artifacts is None or not await self.artifacts.has_artifact(
                source.repository, source.tag
            ):
                logger.info(
                    f"[bootstrap] {resource.name} waits for {source.repository}:{source.tag}"
                )
                raise BootstrapRequired(resource.name, source.repository, source.tag)
        logger.debug(f"[bootstrap] {resource.name} placeholder artifacts present")
