"""
Tests for planning: action selection, blocking and reference resolution.
"""

import pytest

from converge.engine import (
    ActionType,
    BootstrapSequencer,
    ObservedState,
    Planner,
    decide_action,
    lookup_reference,
    resolve_attributes,
)
from converge.engine.state import ObservedResource
from converge.errors import CycleError, DeclarationError
from converge.resources import (
    EdgeKind,
    LifecycleState,
    Reference,
    Resource,
    ResourceKind,
    spec_for,
)

from conftest import web_stack


def _active(resource: Resource, outputs=None, attributes=None) -> ObservedResource:
    record = ObservedResource.for_resource(resource)
    record.state = LifecycleState.ACTIVE
    record.ever_active = True
    record.outputs = dict(outputs or {})
    record.attributes = dict(attributes or {})
    record.dependencies = resource.dependencies()
    return record


# =============================================================================
# Reference Resolution
# =============================================================================


class TestResolution:
    """Tests for resolving references against observed state."""

    def test_identifier_always_resolves(self, observed):
        resources = {r.name: r for r in web_stack()}
        found, value = lookup_reference(Reference("app-service"), resources, observed)
        assert found
        assert value == "compute-service.app-service"

    def test_early_output_resolves_before_active(self, observed):
        resources = {r.name: r for r in web_stack()}
        found, value = lookup_reference(
            Reference("app-registry", "repository_uri"), resources, observed
        )
        assert (found, value) == (True, "app")

    def test_produced_output_needs_active_target(self, observed):
        resources = {r.name: r for r in web_stack()}
        ref = Reference("app-service", "endpoint")
        assert lookup_reference(ref, resources, observed) == (False, None)

        observed.resources["app-service"] = _active(
            resources["app-service"], outputs={"endpoint": "api.internal"}
        )
        assert lookup_reference(ref, resources, observed) == (True, "api.internal")

    def test_failed_target_outputs_not_used(self, observed):
        resources = {r.name: r for r in web_stack()}
        record = _active(resources["app-service"], outputs={"endpoint": "api.internal"})
        record.state = LifecycleState.FAILED
        observed.resources["app-service"] = record
        found, _ = lookup_reference(Reference("app-service", "endpoint"), resources, observed)
        assert not found

    def test_resolve_attributes_reports_pending(self, observed):
        resources = {r.name: r for r in web_stack()}
        resolution = resolve_attributes(resources["app-edge"], resources, observed)
        assert not resolution.complete
        assert resolution.pending == [Reference("app-service", "endpoint")]
        assert resolution.attributes["price_class"] == "PriceClass_100"

    def test_unresolved_bootstrap_reference_is_none(self, observed):
        pipeline = Resource(
            "pipeline",
            ResourceKind.PIPELINE,
            {"target": Reference("api", "endpoint", EdgeKind.BOOTSTRAP)},
        )
        api = Resource("api", ResourceKind.COMPUTE_SERVICE, {"image": "x"})
        resolution = resolve_attributes(pipeline, {"pipeline": pipeline, "api": api}, observed)
        assert resolution.complete
        assert resolution.attributes["target"] is None


class TestDecideAction:
    """Tests for create/update/no-op selection."""

    spec = spec_for(ResourceKind.REGISTRY)
    resource = Resource("registry", ResourceKind.REGISTRY)

    def test_create_when_never_observed(self):
        action, changes = decide_action(self.spec, None, {"a": 1})
        assert action == ActionType.CREATE
        assert changes == ["a"]

    def test_create_after_destroy(self):
        record = ObservedResource.for_resource(self.resource)
        record.state = LifecycleState.DESTROYED
        assert decide_action(self.spec, record, {})[0] == ActionType.CREATE

    def test_failed_before_active_is_created_again(self):
        record = ObservedResource.for_resource(self.resource)
        record.state = LifecycleState.FAILED
        assert decide_action(self.spec, record, {})[0] == ActionType.CREATE

    def test_failed_after_active_is_updated(self):
        record = _active(self.resource, attributes={"a": 1})
        record.state = LifecycleState.FAILED
        assert decide_action(self.spec, record, {"a": 1}) == (ActionType.UPDATE, [])

    def test_update_on_diff(self):
        record = _active(self.resource, attributes={"a": 1})
        assert decide_action(self.spec, record, {"a": 2}) == (ActionType.UPDATE, ["a"])

    def test_no_op_when_equal(self):
        record = _active(self.resource, attributes={"a": 1})
        assert decide_action(self.spec, record, {"a": 1}) == (ActionType.NO_OP, [])


# =============================================================================
# Planner
# =============================================================================


class TestPlanner:
    """Tests for whole-plan computation."""

    @pytest.mark.asyncio
    async def test_fresh_stack_with_artifact(self, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        plan = await Planner(sequencer=BootstrapSequencer(artifacts)).plan(web_stack(), observed)

        assert [a.name for a in plan.actions] == [
            "app-registry",
            "app-service",
            "app-edge",
            "app-dns",
        ]
        assert all(a.action == ActionType.CREATE for a in plan.actions)
        assert plan.action_for("app-edge").wait_for == ["app-service"]
        assert plan.blocked == {}

    @pytest.mark.asyncio
    async def test_missing_artifact_blocks_compute_and_dependents(self, artifacts, observed):
        plan = await Planner(sequencer=BootstrapSequencer(artifacts)).plan(web_stack(), observed)

        assert plan.summary() == {
            "app-registry": "create",
            "app-service": "blocked",
            "app-edge": "blocked",
            "app-dns": "blocked",
        }
        assert plan.blocked["app-service"].startswith("BootstrapRequired")
        assert plan.blocked["app-edge"] == "dependency 'app-service' is blocked"
        assert not plan.is_noop

    @pytest.mark.asyncio
    async def test_planner_without_sequencer_never_blocks_on_artifacts(self, observed):
        plan = await Planner().plan(web_stack(), observed)
        assert plan.blocked == {}

    @pytest.mark.asyncio
    async def test_unknown_output_blocks(self, observed):
        registry = Resource("registry", ResourceKind.REGISTRY)
        api = Resource(
            "api", ResourceKind.COMPUTE_SERVICE, {"image": Reference("registry", "nonsense")}
        )
        plan = await Planner().plan([registry, api], observed)
        assert "does not produce 'nonsense'" in plan.blocked["api"]
        assert plan.blocked["api"].startswith("ReferenceUnresolved")

    @pytest.mark.asyncio
    async def test_failed_service_is_updated_and_edge_waits_for_it(self, observed):
        resources = web_stack()
        record = _active(resources[1], outputs={"endpoint": "api.internal"})
        record.state = LifecycleState.FAILED
        observed.resources["app-service"] = record
        observed.resources["app-registry"] = _active(
            resources[0],
            outputs={"repository_name": "app", "repository_uri": "app"},
            attributes={"repository_name": "app", "image_tag_mutability": "MUTABLE", "scan_on_push": True},
        )
        plan = await Planner().plan(resources, observed)
        # The failed service is updated, so the edge can wait for it
        assert plan.action_for("app-service").action == ActionType.UPDATE
        assert plan.action_for("app-edge").action == ActionType.CREATE

    @pytest.mark.asyncio
    async def test_in_flight_resource_blocked(self, observed):
        resources = web_stack()
        record = ObservedResource.for_resource(resources[0])
        record.state = LifecycleState.APPLYING
        observed.resources["app-registry"] = record

        plan = await Planner().plan(resources, observed)
        assert plan.blocked["app-registry"] == "an action is in flight (applying)"

    @pytest.mark.asyncio
    async def test_undeclared_observed_resources_destroyed_dependents_first(self, observed):
        resources = web_stack()
        for resource in resources:
            observed.resources[resource.name] = _active(resource)

        plan = await Planner().plan([], observed)

        assert [a.name for a in plan.destroy_actions] == [
            "app-dns",
            "app-edge",
            "app-service",
            "app-registry",
        ]
        assert plan.action_for("app-service").wait_for == ["app-edge"]
        assert plan.action_for("app-dns").wait_for == []

    @pytest.mark.asyncio
    async def test_destroy_waits_for_declared_resource_still_referencing_it(self, observed):
        resources = web_stack()
        for resource in resources:
            observed.resources[resource.name] = _active(resource)

        actions = Planner().destroy_actions(observed, exclude={"app-registry", "app-service", "app-dns"})

        assert [a.name for a in actions] == ["app-edge"]
        assert actions[0].wait_for == ["app-dns"]

    @pytest.mark.asyncio
    async def test_destroy_only_selection_includes_dependents(self, observed):
        resources = web_stack()
        for resource in resources:
            observed.resources[resource.name] = _active(resource)

        actions = Planner().destroy_actions(observed, only={"app-service"})
        assert [a.name for a in actions] == ["app-dns", "app-edge", "app-service"]

    @pytest.mark.asyncio
    async def test_missing_required_attribute_rejected(self, observed):
        with pytest.raises(DeclarationError):
            await Planner().plan([Resource("api", ResourceKind.COMPUTE_SERVICE)], observed)

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_planning(self, observed):
        a = Resource("a", ResourceKind.PIPELINE, {"x": Reference("b", "pipeline_arn")})
        b = Resource("b", ResourceKind.PIPELINE, {"x": Reference("a", "pipeline_arn")})
        with pytest.raises(CycleError):
            await Planner().plan([a, b], observed)

    @pytest.mark.asyncio
    async def test_plan_to_dict(self, artifacts, observed):
        plan = await Planner(sequencer=BootstrapSequencer(artifacts)).plan(web_stack(), observed)
        data = plan.to_dict()
        assert [a["action"] for a in data["actions"]] == ["create"]
        assert set(data["blocked"]) == {"app-service", "app-edge", "app-dns"}
