"""
Resource model for converge.

A Resource is the declared description of one managed cloud object:
a registry, secret, certificate, compute service, edge distribution,
DNS record or pipeline. Attributes hold plain values, References to
other resources, or SecretReferences; outputs are filled in once the
provider has created the resource.

Lifecycle:
    declared -> planned -> applying -> active
    active -> updating -> active
    active -> destroying -> destroyed
    failed is reachable from planned, applying, updating and destroying,
    and a failed resource can be planned again.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from converge.errors import DeclarationError


class ResourceKind(str, Enum):
    """Closed set of resource kinds."""

    REGISTRY = "registry"
    SECRET = "secret"
    CERTIFICATE = "certificate"
    COMPUTE_SERVICE = "compute-service"
    EDGE_DISTRIBUTION = "edge-distribution"
    DNS_RECORD = "dns-record"
    PIPELINE = "pipeline"


class LifecycleState(str, Enum):
    """Lifecycle state of a resource."""

    DECLARED = "declared"
    PLANNED = "planned"
    APPLYING = "applying"
    ACTIVE = "active"
    UPDATING = "updating"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (
            LifecycleState.PLANNED,
            LifecycleState.APPLYING,
            LifecycleState.UPDATING,
            LifecycleState.DESTROYING,
        )


TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.DECLARED: frozenset({LifecycleState.PLANNED}),
    LifecycleState.PLANNED: frozenset({LifecycleState.APPLYING, LifecycleState.FAILED}),
    LifecycleState.APPLYING: frozenset({LifecycleState.ACTIVE, LifecycleState.FAILED}),
    LifecycleState.ACTIVE: frozenset({LifecycleState.UPDATING, LifecycleState.DESTROYING}),
    LifecycleState.UPDATING: frozenset({LifecycleState.ACTIVE, LifecycleState.FAILED}),
    LifecycleState.DESTROYING: frozenset({LifecycleState.DESTROYED, LifecycleState.FAILED}),
    LifecycleState.DESTROYED: frozenset({LifecycleState.PLANNED}),
    LifecycleState.FAILED: frozenset(
        {LifecycleState.PLANNED, LifecycleState.UPDATING, LifecycleState.DESTROYING}
    ),
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return target in TRANSITIONS[current]


class EdgeKind(str, Enum):
    """
    Dependency edge type.

    Bootstrap edges are satisfied once externally and are never used
    for ordering, which lets the resolver accept the cycles they close.
    """

    NORMAL = "normal"
    BOOTSTRAP = "bootstrap"


@dataclass(frozen=True, slots=True)
class Reference:
    """
    Typed edge from an attribute to another resource's output or identifier.

    Attributes:
        target: Name of the referenced resource
        output: Output name, or None to reference the stable identifier
        edge: NORMAL or BOOTSTRAP
    """

    target: str
    output: str | None = None
    edge: EdgeKind = EdgeKind.NORMAL

    @property
    def is_bootstrap(self) -> bool:
        return self.edge == EdgeKind.BOOTSTRAP

    def describe(self) -> str:
        if self.output is None:
            return f"{self.target} (identifier)"
        return f"{self.target}.{self.output}"

    @classmethod
    def parse(cls, expression: str, *, bootstrap: bool = False) -> Reference:
        """
        Parse a "name" or "name.output" expression.

        Example:
            Reference.parse("api.endpoint")
            Reference.parse("registry.repository_uri", bootstrap=True)
        """
        expression = expression.strip()
        if not expression:
            raise DeclarationError("Empty reference expression")
        target, _, output = expression.partition(".")
        return cls(
            target=target,
            output=output or None,
            edge=EdgeKind.BOOTSTRAP if bootstrap else EdgeKind.NORMAL,
        )

    def to_dict(self) -> dict[str, Any]:
        expression = self.target if self.output is None else f"{self.target}.{self.output}"
        data: dict[str, Any] = {"$ref": expression}
        if self.is_bootstrap:
            data["bootstrap"] = True
        return data


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested inside an attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


@dataclass
class Resource:
    """
    A declared resource.

    The attribute map never holds secret values: SecretReference
    attributes carry only the locator.

    Example:
        api = Resource(
            name="api",
            kind=ResourceKind.COMPUTE_SERVICE,
            attributes={"image": Reference("registry", "repository_uri"), "port": 8080},
        )
    """

    name: str
    kind: ResourceKind
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    state: LifecycleState = LifecycleState.DECLARED
    failure_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.name or "." in self.name:
            raise DeclarationError(f"Invalid resource name: {self.name!r}")
        if not isinstance(self.kind, ResourceKind):
            try:
                self.kind = ResourceKind(self.kind)
            except ValueError:
                raise DeclarationError(
                    f"Resource '{self.name}' has unknown kind {self.kind!r}"
                ) from None

    @property
    def identifier(self) -> str:
        """Stable identifier used for idempotent provider calls."""
        return f"{self.kind.value}.{self.name}"

    def references(self) -> list[Reference]:
        return list(iter_references(self.attributes))

    def dependencies(self, *, include_bootstrap: bool = False) -> list[str]:
        """Names of referenced resources, in attribute order, without duplicates."""
        names: list[str] = []
        for ref in self.references():
            if ref.is_bootstrap and not include_bootstrap:
                continue
            if ref.target not in names:
                names.append(ref.target)
        return names

    def bootstrap_dependencies(self) -> list[str]:
        return [r.target for r in self.references() if r.is_bootstrap]

    def __repr__(self) -> str:
        return f"Resource({self.identifier}, state={self.state.value})"
