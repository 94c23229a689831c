"""
Planner for converge.

Computes the ordered set of per-resource actions that takes observed
state to the declared configuration:

- create: never applied, destroyed, or failed before it was ever active
- update: attributes differ from the last applied ones, or the last
  update failed
- no-op: nothing to do
- destroy: observed but no longer declared

Creates, updates and no-ops follow the topological order of the graph;
destroys follow the reverse order of the dependencies recorded when the
resources were applied.

A resource whose references cannot be satisfied is blocked: it gets no
action and its reason is kept on the plan. A reference is satisfiable
when the target output is observed, is an early output, or will be
produced by a create/update of the target earlier in the same plan.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from converge.errors import BootstrapRequired, ProviderError, ReferenceUnresolved
from converge.graph import GraphResolver, ResourceGraph
from converge.resources import (
    KindSpec,
    LifecycleState,
    Reference,
    Resource,
    ResourceKind,
    SecretReference,
    iter_references,
    normalize,
    spec_for,
)

from .bootstrap import BootstrapSequencer
from .observability import redact
from .state import ObservedResource, ObservedState

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Planned action for one resource."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NO_OP = "no-op"


@dataclass
class PlannedAction:
    """
    One resource's action.

    `wait_for` lists the resources whose actions must finish first: the
    non-bootstrap dependencies for create/update, the dependents being
    destroyed for destroy.
    """

    name: str
    kind: ResourceKind
    identifier: str
    action: ActionType
    changes: list[str] = field(default_factory=list)
    wait_for: list[str] = field(default_factory=list)

    @property
    def changes_state(self) -> bool:
        return self.action != ActionType.NO_OP

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "action": self.action.value,
            "changes": self.changes,
            "wait_for": self.wait_for,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Plan:
    """Ordered actions plus the resources that could not be planned."""

    actions: list[PlannedAction] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    graph: ResourceGraph | None = None
    created_at: datetime = field(default_factory=_utc_now)

    def action_for(self, name: str) -> PlannedAction | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    @property
    def converge_actions(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.action != ActionType.DESTROY]

    @property
    def destroy_actions(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.action == ActionType.DESTROY]

    @property
    def is_noop(self) -> bool:
        return not self.blocked and all(a.action == ActionType.NO_OP for a in self.actions)

    def summary(self) -> dict[str, str]:
        """Resource name to action, blocked resources included."""
        table = {a.name: a.action.value for a in self.actions}
        table.update({name: "blocked" for name in self.blocked})
        return table

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "actions": [a.to_dict() for a in self.actions],
            "blocked": redact(self.blocked),
        }


# =============================================================================
# Reference Resolution
# =============================================================================


@dataclass
class Resolution:
    """Attributes with references replaced by values."""

    attributes: dict[str, Any]
    pending: list[Reference] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.pending

    def normalized(self) -> dict[str, Any]:
        return normalize(self.attributes)


def lookup_reference(
    ref: Reference,
    resources: Mapping[str, Resource],
    observed: ObservedState,
) -> tuple[bool, Any]:
    """
    Current value of a reference.

    Returns (found, value). Identifiers are always found; outputs are
    found when the target is active and has them, or when they are
    early outputs of the target's declaration.
    """
    target = resources.get(ref.target)
    if ref.output is None:
        if target is not None:
            return True, target.identifier
        record = observed.get(ref.target)
        return (True, record.identifier) if record else (False, None)

    record = observed.get(ref.target)
    if record is not None and record.is_active and ref.output in record.outputs:
        return True, record.outputs[ref.output]
    if target is not None:
        early = spec_for(target.kind).early_outputs(target)
        if ref.output in early:
            return True, early[ref.output]
    return False, None


def resolve_attributes(
    resource: Resource,
    resources: Mapping[str, Resource],
    observed: ObservedState,
) -> Resolution:
    """
    Resolve a resource's attributes (kind defaults applied).

    Unresolved normal references stay in place and are listed as pending.
    Unresolved bootstrap references resolve to None and are filled in by
    a later pass once their target is active. SecretReferences are kept
    as locators.
    """
    pending: list[Reference] = []

    def resolve(value: Any) -> Any:
        if isinstance(value, Reference):
            found, resolved = lookup_reference(value, resources, observed)
            if found:
                return resolved
            if value.is_bootstrap:
                return None
            pending.append(value)
            return value
        if isinstance(value, SecretReference):
            return value
        if isinstance(value, dict):
            return {k: resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [resolve(v) for v in value]
        return value

    spec = spec_for(resource.kind)
    attributes = {k: resolve(v) for k, v in spec.with_defaults(resource.attributes).items()}
    return Resolution(attributes, pending)


def decide_action(
    spec: KindSpec,
    record: ObservedResource | None,
    normalized: Mapping[str, Any],
) -> tuple[ActionType, list[str]]:
    """Pick create/update/no-op from the observed record and resolved attributes."""
    if (
        record is None
        or record.state in (LifecycleState.DECLARED, LifecycleState.DESTROYED)
        or (record.state == LifecycleState.FAILED and not record.ever_active)
    ):
        return ActionType.CREATE, sorted(normalized)

    changes = spec.diff(normalized, record.attributes)
    if record.state == LifecycleState.FAILED:
        return ActionType.UPDATE, changes
    if changes:
        return ActionType.UPDATE, changes
    return ActionType.NO_OP, []


# =============================================================================
# Planner
# =============================================================================


class Planner:
    """
    Diff declared resources against observed state.

    Example:
        planner = Planner(sequencer=BootstrapSequencer(artifacts))
        plan = await planner.plan(resources, observed)
        plan.summary()  # {"registry": "create", "api": "blocked", ...}
    """

    def __init__(
        self,
        resolver: GraphResolver | None = None,
        sequencer: BootstrapSequencer | None = None,
    ):
        self.resolver = resolver or GraphResolver()
        self.sequencer = sequencer

    async def plan(self, resources: Iterable[Resource], observed: ObservedState) -> Plan:
        """
        Raises:
            DeclarationError: Invalid or duplicate declarations
            CycleError: A cycle without any bootstrap edge
        """
        graph = self.resolver.resolve(resources)
        for resource in graph:
            spec_for(resource.kind).validate(resource)

        plan = Plan(graph=graph)
        promised: set[str] = set()

        for resource in graph:
            reason = await self._blocked_reason(resource, graph, observed, plan.blocked, promised)
            if reason is not None:
                plan.blocked[resource.name] = reason
                logger.info(f"[plan] {resource.name} blocked: {reason}")
                continue

            spec = spec_for(resource.kind)
            resolution = resolve_attributes(resource, graph.resources, observed)
            action, changes = decide_action(
                spec, observed.get(resource.name), resolution.normalized()
            )
            if action == ActionType.NO_OP and not resolution.complete:
                action = ActionType.UPDATE
                changes = sorted({*changes, *self._pending_keys(resource, resolution)})
            if action != ActionType.NO_OP:
                promised.add(resource.name)

            plan.actions.append(
                PlannedAction(
                    name=resource.name,
                    kind=resource.kind,
                    identifier=resource.identifier,
                    action=action,
                    changes=changes,
                    wait_for=graph.dependencies(resource.name),
                )
            )

        plan.actions.extend(self.destroy_actions(observed, exclude=set(graph.resources)))
        logger.debug(f"[plan] {plan.summary()}")
        return plan

    async def _blocked_reason(
        self,
        resource: Resource,
        graph: ResourceGraph,
        observed: ObservedState,
        blocked: Mapping[str, str],
        promised: set[str],
    ) -> str | None:
        record = observed.get(resource.name)
        if record is not None and record.state.in_flight:
            return f"an action is in flight ({record.state.value})"

        for ref in resource.references():
            if ref.is_bootstrap:
                continue
            if ref.target in blocked:
                return f"dependency '{ref.target}' is blocked"
            if ref.output is None:
                continue
            found, _ = lookup_reference(ref, graph.resources, observed)
            if found:
                continue
            target = graph.resource(ref.target)
            if ref.target in promised and spec_for(target.kind).promises(target, ref.output):
                continue
            detail = (
                f"'{ref.target}' does not produce '{ref.output}'"
                if not spec_for(target.kind).promises(target, ref.output)
                else f"'{ref.target}' is not active"
            )
            return str(ReferenceUnresolved(resource.name, ref, detail))

        if self.sequencer is not None:
            try:
                await self.sequencer.check(resource, graph.resources, observed)
            except BootstrapRequired as e:
                return str(e)
            except ProviderError as e:
                return f"artifact check failed: {e}"
        return None

    @staticmethod
    def _pending_keys(resource: Resource, resolution: Resolution) -> list[str]:
        pending = set(resolution.pending)
        return [
            key
            for key, value in resource.attributes.items()
            if pending.intersection(iter_references(value))
        ]

    def destroy_actions(
        self,
        observed: ObservedState,
        *,
        exclude: set[str] | None = None,
        only: set[str] | None = None,
    ) -> list[PlannedAction]:
        """
        Destroy actions for observed resources, dependents first.

        Args:
            exclude: Names that stay (still declared)
            only: Destroy just these names plus everything depending on them
        """
        live = {
            r.name: r
            for r in observed
            if r.state != LifecycleState.DESTROYED and r.name not in (exclude or set())
        }
        if only is not None:
            selected = {n for n in only if n in live}
            changed = True
            while changed:
                changed = False
                for name, record in live.items():
                    if name not in selected and selected & set(record.dependencies):
                        selected.add(name)
                        changed = True
            live = {n: r for n, r in live.items() if n in selected}

        order: list[str] = []
        visited: set[str] = set()

        def visit(name: str) -> None:
            visited.add(name)
            for dependency in live[name].dependencies:
                if dependency in live and dependency not in visited:
                    visit(dependency)
            order.append(name)

        for name in live:
            if name not in visited:
                visit(name)

        # Still-declared records that referenced a doomed resource on their last
        # successful apply; the destroy waits until they have moved off it.
        holders = [
            r
            for r in observed
            if r.name in (exclude or set()) and r.state != LifecycleState.DESTROYED
        ]

        actions = []
        for name in reversed(order):
            record = live[name]
            dependents = [n for n in order if name in live[n].dependencies]
            dependents += [h.name for h in holders if name in h.dependencies]
            actions.append(
                PlannedAction(
                    name=name,
                    kind=record.kind,
                    identifier=record.identifier,
                    action=ActionType.DESTROY,
                    wait_for=dependents,
                )
            )
        return actions
