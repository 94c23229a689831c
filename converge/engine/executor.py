"""
Convergence Engine.

Applies a Plan against the providers:

- One asyncio task per action. A task waits for the tasks of its
  dependencies and only starts when every one of them ended active.
- A semaphore bounds how many provider calls run at once.
- A failed action fails only its resource. Its dependents are skipped,
  independent branches continue.
- Every action re-resolves its references and re-diffs just before it
  runs, so a stale plan never repeats work already done.
- Lifecycle transitions are checkpointed to ObservedState as they happen.
- After the wave, resolve-and-replan passes pick up resources that were
  blocked at plan time and bootstrap references filled in by the wave.
- Destroys run after creates and updates, dependents first.

Usage:
    engine = ConvergenceEngine(ProviderRegistry(provider, artifacts=registry))
    result = await engine.converge(resources, observed)
    result.table()  # {"registry": "applied", "api": "applied", ...}
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from converge.errors import (
    BootstrapRequired,
    ConvergeError,
    ProviderError,
    ReferenceUnresolved,
    SecretBindingError,
)
from converge.graph import GraphResolver
from converge.resources import LifecycleState, Resource, ResourceKind, spec_for
from converge.secrets import SecretBinder

from .bootstrap import BootstrapSequencer
from .context import ApplyContext
from .locks import ResourceLocks
from .observability import AuditEntry, AuditRepository, ConvergenceLogger
from .plan import (
    ActionType,
    Plan,
    PlannedAction,
    Planner,
    decide_action,
    resolve_attributes,
)
from .retry import PROVIDER_RETRY, RetryPolicy, with_retry
from .state import ObservedResource, ObservedState

if TYPE_CHECKING:
    from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================


class OutcomeStatus(str, Enum):
    """Final status of one resource in an apply."""

    APPLIED = "applied"
    NO_OP = "no-op"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ResourceOutcome:
    """What happened to one resource."""

    name: str
    status: OutcomeStatus
    action: ActionType | None = None
    reason: str | None = None
    duration_ms: float | None = None

    @property
    def label(self) -> str:
        if self.status == OutcomeStatus.FAILED:
            return f"failed:{self.reason or 'unknown'}"
        return self.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "action": self.action.value if self.action else None,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ApplyResult:
    """Per-resource outcome table of one apply."""

    run_id: str
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    blocked: dict[str, str] = field(default_factory=dict)
    passes: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed()

    def record(self, outcome: ResourceOutcome) -> None:
        self.outcomes[outcome.name] = outcome

    def status_of(self, name: str) -> OutcomeStatus | None:
        outcome = self.outcomes.get(name)
        return outcome.status if outcome else None

    def failed(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.status == OutcomeStatus.FAILED]

    def applied(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.status == OutcomeStatus.APPLIED]

    def skipped(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.status == OutcomeStatus.SKIPPED]

    def table(self) -> dict[str, str]:
        """Resource name to "applied", "no-op", "skipped" or "failed:<reason>"."""
        return {name: outcome.label for name, outcome in self.outcomes.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "cancelled": self.cancelled,
            "passes": self.passes,
            "duration_ms": round(self.duration_ms, 2),
            "outcomes": {n: o.to_dict() for n, o in self.outcomes.items()},
            "blocked": self.blocked,
        }


class _ActionFailed(Exception):
    """Internal: carries the failure reason of one action."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# =============================================================================
# Engine
# =============================================================================


class ConvergenceEngine:
    """
    Plan/apply engine.

    Args:
        providers: Registry holding the control plane, artifact registry
            and secret store collaborators
        max_parallel: Upper bound on concurrent provider actions
        max_replan_passes: Resolve-and-replan passes after the first wave
        retry_policy: Retry for transient provider errors
        locks: Shared with release triggers for single-writer access
        audit: Optional audit repository, one entry per apply
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        *,
        max_parallel: int = 4,
        max_replan_passes: int = 1,
        retry_policy: RetryPolicy = PROVIDER_RETRY,
        locks: ResourceLocks | None = None,
        audit: AuditRepository | None = None,
        resolver: GraphResolver | None = None,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.providers = providers
        self.max_parallel = max_parallel
        self.max_replan_passes = max(0, max_replan_passes)
        self.retry_policy = retry_policy
        self.locks = locks or ResourceLocks()
        self.audit = audit
        self.sequencer = BootstrapSequencer(providers.artifacts)
        self.binder = SecretBinder(providers.secrets)
        self.planner = Planner(resolver, self.sequencer)

    # ==================== Entry Points ====================

    async def plan(self, resources: Iterable[Resource], observed: ObservedState) -> Plan:
        return await self.planner.plan(resources, observed)

    async def converge(
        self,
        resources: Iterable[Resource],
        observed: ObservedState,
        context: ApplyContext | None = None,
    ) -> ApplyResult:
        """Plan, then apply."""
        plan = await self.plan(resources, observed)
        return await self.apply(plan, observed, context)

    async def apply(
        self,
        plan: Plan,
        observed: ObservedState,
        context: ApplyContext | None = None,
    ) -> ApplyResult:
        """
        Apply `plan` and run the configured replan passes.

        Never raises for a resource failure; see ApplyResult.table().
        """
        ctx = context or ApplyContext(environment=observed.environment)
        log = ConvergenceLogger(run_id=ctx.run_id, environment=observed.environment)
        result = ApplyResult(run_id=ctx.run_id)
        start = time.perf_counter()

        log.plan_computed(
            actions={a.name: a.action.value for a in plan.actions},
            blocked=plan.blocked,
        )
        log.apply_started(actions=len(plan.actions), max_parallel=self.max_parallel)

        try:
            await self._run_wave(plan, plan.converge_actions, observed, ctx, result, log)
            result.passes = 1
            current = plan
            declared = list(plan.graph.resources.values()) if plan.graph else []

            while declared and result.passes <= self.max_replan_passes and not ctx.cancelled:
                current = await self.planner.plan(declared, observed)
                retry = [
                    a
                    for a in current.converge_actions
                    if a.action != ActionType.NO_OP
                    and result.status_of(a.name)
                    not in (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED)
                ]
                if not retry:
                    break
                logger.info(
                    f"[engine] Replan pass {result.passes}: {[a.name for a in retry]}"
                )
                await self._run_wave(current, retry, observed, ctx, result, log)
                result.passes += 1

            result.blocked = {
                name: reason
                for name, reason in current.blocked.items()
                if result.status_of(name) is None
            }
            for name, reason in result.blocked.items():
                log.resource_blocked(name, reason)
                result.record(
                    ResourceOutcome(name, OutcomeStatus.SKIPPED, reason=f"blocked: {reason}")
                )

            await self._run_wave(plan, plan.destroy_actions, observed, ctx, result, log)
        except asyncio.CancelledError:
            result.cancelled = True
            await asyncio.shield(observed.checkpoint())
            raise
        finally:
            result.duration_ms = (time.perf_counter() - start) * 1000

        result.cancelled = result.cancelled or ctx.cancelled
        log.apply_completed(
            success=result.success,
            duration_ms=result.duration_ms,
            outcomes=result.table(),
            passes=result.passes,
        )
        await self._audit(ctx, observed, result)
        return result

    async def teardown(
        self,
        observed: ObservedState,
        names: Iterable[str] | None = None,
        context: ApplyContext | None = None,
    ) -> ApplyResult:
        """
        Destroy observed resources, dependents first.

        Args:
            names: Only these resources and whatever depends on them;
                everything when omitted
        """
        only = set(names) if names is not None else None
        plan = Plan(actions=self.planner.destroy_actions(observed, only=only))
        return await self.apply(plan, observed, context)

    # ==================== Wave ====================

    async def _run_wave(
        self,
        plan: Plan,
        actions: list[PlannedAction],
        observed: ObservedState,
        ctx: ApplyContext,
        result: ApplyResult,
        log: ConvergenceLogger,
    ) -> None:
        if not actions:
            return

        done = {a.name: asyncio.Event() for a in actions}
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run(action: PlannedAction) -> None:
            try:
                for dependency in action.wait_for:
                    event = done.get(dependency)
                    if event is not None:
                        await event.wait()
                    declared = plan.graph is not None and dependency in plan.graph
                    reason = self._unmet(action, dependency, observed, result, declared)
                    if reason is not None:
                        result.record(
                            ResourceOutcome(
                                action.name, OutcomeStatus.SKIPPED, action.action, reason
                            )
                        )
                        return

                if ctx.cancelled:
                    result.record(
                        ResourceOutcome(
                            action.name, OutcomeStatus.SKIPPED, action.action, "cancelled"
                        )
                    )
                    return

                async with semaphore, self.locks.hold(action.name):
                    started = time.perf_counter()
                    outcome = await self._execute(plan, action, observed, ctx, log)
                    outcome.duration_ms = (time.perf_counter() - started) * 1000
                    ctx.record_timing(action.name, outcome.duration_ms)
                    result.record(outcome)
            finally:
                done[action.name].set()

        await asyncio.gather(*(run(a) for a in actions))

    @staticmethod
    def _unmet(
        action: PlannedAction,
        dependency: str,
        observed: ObservedState,
        result: ApplyResult,
        declared: bool = False,
    ) -> str | None:
        status = result.status_of(dependency)
        if action.action == ActionType.DESTROY:
            record = observed.get(dependency)
            if record is None or record.state == LifecycleState.DESTROYED:
                return None
            if declared:
                # Dependencies are only rewritten on a successful apply
                if action.name in record.dependencies:
                    return f"dependent '{dependency}' still references it"
                return None
            return f"dependent '{dependency}' was not destroyed"
        if status in (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED):
            return f"dependency '{dependency}' {status.value}"
        if not observed.is_active(dependency):
            return f"dependency '{dependency}' is not active"
        return None

    # ==================== Actions ====================

    async def _execute(
        self,
        plan: Plan,
        action: PlannedAction,
        observed: ObservedState,
        ctx: ApplyContext,
        log: ConvergenceLogger,
    ) -> ResourceOutcome:
        record: ObservedResource | None = None
        try:
            if action.action == ActionType.DESTROY:
                record = observed.get(action.name)
                return await self._destroy(action, record, observed, log)

            if plan.graph is None:
                raise ConvergeError(f"Plan has no declared resource for '{action.name}'")
            resource = plan.graph.resource(action.name)
            resolution = resolve_attributes(resource, plan.graph.resources, observed)
            if not resolution.complete:
                ref = resolution.pending[0]
                reason = str(ReferenceUnresolved(resource.name, ref, "output not populated"))
                return ResourceOutcome(
                    action.name, OutcomeStatus.SKIPPED, action.action, f"blocked: {reason}"
                )

            spec = spec_for(resource.kind)
            normalized = resolution.normalized()
            kind_action, changes = decide_action(spec, observed.get(resource.name), normalized)
            if kind_action == ActionType.NO_OP:
                self._mirror(resource, observed.get(resource.name))
                return ResourceOutcome(action.name, OutcomeStatus.NO_OP, kind_action)

            record = observed.ensure(resource)
            if kind_action == ActionType.CREATE:
                await self._transition(record, LifecycleState.PLANNED, observed, log)
                try:
                    await self.sequencer.check(resource, plan.graph.resources, observed)
                except (BootstrapRequired, ProviderError) as e:
                    raise _ActionFailed(str(e)) from e
                await self._transition(record, LifecycleState.APPLYING, observed, log)
                call = spec.create
            else:
                logger.info(f"[engine] {resource.name} changes: {changes}")
                await self._transition(record, LifecycleState.UPDATING, observed, log)
                call = spec.update

            provider = self.providers.get(resource.kind)
            outputs = await self._with_retry(
                lambda: call(provider, resource, resolution.attributes),
                f"{kind_action.value} {resource.identifier}",
                log,
            )
            record.outputs = outputs
            record.dependencies = resource.dependencies()

            if resource.kind == ResourceKind.COMPUTE_SERVICE:
                await self._bind_secrets(resource, resolution.attributes, outputs, log)
                if outputs.get("image_digest"):
                    record.current_digest = outputs["image_digest"]

            record.attributes = normalized
            await self._transition(record, LifecycleState.ACTIVE, observed, log)
            self._mirror(resource, record)
            return ResourceOutcome(action.name, OutcomeStatus.APPLIED, kind_action)

        except _ActionFailed as e:
            return await self._fail(action, record, e.reason, e.__cause__ or e, observed, plan, log)
        except ConvergeError as e:
            return await self._fail(action, record, str(e), e, observed, plan, log)
        except asyncio.CancelledError:
            if record is not None and record.state.in_flight:
                record.transition(LifecycleState.FAILED, "cancelled")
            raise
        except Exception as e:
            logger.exception(f"[engine] Unexpected error applying '{action.name}'")
            return await self._fail(
                action, record, f"{type(e).__name__}: {e}", e, observed, plan, log
            )

    async def _destroy(
        self,
        action: PlannedAction,
        record: ObservedResource | None,
        observed: ObservedState,
        log: ConvergenceLogger,
    ) -> ResourceOutcome:
        if record is None or record.state == LifecycleState.DESTROYED:
            return ResourceOutcome(action.name, OutcomeStatus.NO_OP, action.action)
        if record.state == LifecycleState.DECLARED:
            # Never reached the provider
            observed.remove(action.name)
            await observed.checkpoint()
            return ResourceOutcome(action.name, OutcomeStatus.NO_OP, action.action)

        await self._transition(record, LifecycleState.DESTROYING, observed, log)
        spec = spec_for(record.kind)
        provider = self.providers.get(record.kind)
        await self._with_retry(
            lambda: spec.destroy(provider, record.identifier),
            f"destroy {record.identifier}",
            log,
        )
        record.outputs = {}
        record.current_digest = None
        await self._transition(record, LifecycleState.DESTROYED, observed, log)
        return ResourceOutcome(action.name, OutcomeStatus.APPLIED, action.action)

    async def _bind_secrets(
        self,
        resource: Resource,
        attributes: dict[str, Any],
        outputs: dict[str, Any],
        log: ConvergenceLogger,
    ) -> None:
        try:
            await self._with_retry(
                lambda: self.binder.bind_all(resource, attributes, outputs),
                f"bind secrets {resource.identifier}",
                log,
            )
        except SecretBindingError as e:
            raise _ActionFailed(e.reason) from None

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        name: str,
        log: ConvergenceLogger,
    ) -> Any:
        policy = self.retry_policy

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            log.retry_attempt(name, attempt, policy.max_attempts, str(error), delay * 1000)

        outcome = await with_retry(operation, policy, name, on_retry=on_retry)
        return outcome.unwrap()

    async def _transition(
        self,
        record: ObservedResource,
        target: LifecycleState,
        observed: ObservedState,
        log: ConvergenceLogger,
        reason: str | None = None,
    ) -> None:
        previous = record.transition(target, reason)
        log.resource_transition(record.name, previous.value, target.value)
        await observed.checkpoint()

    async def _fail(
        self,
        action: PlannedAction,
        record: ObservedResource | None,
        reason: str,
        error: BaseException,
        observed: ObservedState,
        plan: Plan,
        log: ConvergenceLogger,
    ) -> ResourceOutcome:
        log.resource_failed(action.name, reason, type(error).__name__)
        if record is not None and record.state in (
            LifecycleState.PLANNED,
            LifecycleState.APPLYING,
            LifecycleState.UPDATING,
            LifecycleState.DESTROYING,
        ):
            await self._transition(record, LifecycleState.FAILED, observed, log, reason)
        if plan.graph is not None and action.name in plan.graph:
            self._mirror(plan.graph.resource(action.name), record)
        return ResourceOutcome(action.name, OutcomeStatus.FAILED, action.action, reason)

    @staticmethod
    def _mirror(resource: Resource, record: ObservedResource | None) -> None:
        """Copy observed lifecycle and outputs onto the declared resource."""
        if record is None:
            return
        resource.state = record.state
        resource.outputs = dict(record.outputs)
        resource.failure_reason = record.failure_reason

    async def _audit(self, ctx: ApplyContext, observed: ObservedState, result: ApplyResult) -> None:
        if self.audit is None:
            return
        if result.cancelled:
            status = "cancelled"
        else:
            status = "completed" if result.success else "failed"
        await self.audit.save(
            AuditEntry(
                run_id=ctx.run_id,
                environment=observed.environment,
                timestamp=datetime.now(timezone.utc),
                status=status,
                duration_ms=result.duration_ms,
                success=result.success,
                outcomes=result.table(),
                blocked=result.blocked,
                passes=result.passes,
                metadata=ctx.metadata,
            )
        )
