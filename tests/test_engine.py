"""
Tests for the convergence engine.
"""

import asyncio

import pytest

from converge.engine import (
    ApplyContext,
    ConvergenceEngine,
    InMemoryAuditRepository,
    MemoryStateBackend,
    NoBackoff,
    NO_RETRY,
    ObservedState,
    OutcomeStatus,
    RetryPolicy,
)
from converge.errors import ProviderError
from converge.providers import InMemoryProvider, ProviderRegistry
from converge.resources import EdgeKind, LifecycleState, Reference, Resource, ResourceKind, SecretReference

from conftest import web_stack


def _identifiers(calls):
    return [c.identifier for c in calls]


# =============================================================================
# Apply
# =============================================================================


class TestConverge:
    """Tests for a straight converge of the web stack."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, engine, provider, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(stack, observed)

        assert result.success
        assert result.table() == {
            "app-registry": "applied",
            "app-service": "applied",
            "app-edge": "applied",
            "app-dns": "applied",
        }
        assert _identifiers(provider.calls_for("create")) == [
            "registry.app-registry",
            "compute-service.app-service",
            "edge-distribution.app-edge",
            "dns-record.app-dns",
        ]
        assert all(observed.is_active(r.name) for r in stack)

    @pytest.mark.asyncio
    async def test_resolved_values_flow_downstream(self, engine, provider, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")

        await engine.converge(stack, observed)

        endpoint = observed.outputs_of("app-service")["endpoint"]
        domain = observed.outputs_of("app-edge")["domain_name"]
        edge_call = provider.calls_for("create", "edge-distribution.app-edge")[0]
        assert edge_call.payload["origin"] == endpoint
        assert observed.outputs_of("app-dns")["alias_target"] == domain
        assert observed.outputs_of("app-dns")["fqdn"] == "api.example.com"

    @pytest.mark.asyncio
    async def test_declared_resources_mirror_observed_state(self, engine, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")

        await engine.converge(stack, observed)

        service = stack[1]
        assert service.state == LifecycleState.ACTIVE
        assert service.outputs["endpoint"].endswith(".compute.internal")

    @pytest.mark.asyncio
    async def test_digest_cached_on_create(self, engine, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")

        await engine.converge(stack, observed)

        assert observed.get("app-service").current_digest == "sha256:d1"

    @pytest.mark.asyncio
    async def test_second_converge_is_noop(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)
        calls = len(provider.calls)

        result = await engine.converge(web_stack(), observed)

        assert set(result.table().values()) == {"no-op"}
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_same_plan_applied_twice(self, engine, provider, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")
        plan = await engine.plan(stack, observed)
        await engine.apply(plan, observed)
        creates = len(provider.calls_for("create"))

        result = await engine.apply(plan, observed)

        assert result.success
        assert len(provider.calls_for("create")) == creates
        assert provider.calls_for("update") == []

    @pytest.mark.asyncio
    async def test_attribute_change_updates_only_that_resource(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)

        stack = web_stack()
        stack[1].attributes["port"] = 9000
        result = await engine.converge(stack, observed)

        assert result.table() == {
            "app-registry": "no-op",
            "app-service": "applied",
            "app-edge": "no-op",
            "app-dns": "no-op",
        }
        assert _identifiers(provider.calls_for("update")) == ["compute-service.app-service"]
        assert observed.get("app-service").attributes["port"] == 9000

    @pytest.mark.asyncio
    async def test_state_checkpointed(self, engine, artifacts, observed, stack):
        artifacts.publish("app", "production", "sha256:d1")

        await engine.converge(stack, observed)

        # planned, applying and active for each of the four resources
        assert observed.backend.saves >= 12
        document = observed.backend.documents["test"]
        assert document["resources"]["app-dns"]["state"] == "active"

    def test_max_parallel_must_be_positive(self, providers):
        with pytest.raises(ValueError):
            ConvergenceEngine(providers, max_parallel=0)


class TestBlocked:
    """Tests for resources blocked at plan time."""

    @pytest.mark.asyncio
    async def test_missing_artifact_blocks_compute_chain(self, engine, provider, observed, stack):
        result = await engine.converge(stack, observed)

        assert result.table() == {
            "app-registry": "applied",
            "app-service": "skipped",
            "app-edge": "skipped",
            "app-dns": "skipped",
        }
        assert result.outcomes["app-service"].reason.startswith("blocked: BootstrapRequired")
        assert set(result.blocked) == {"app-service", "app-edge", "app-dns"}
        assert not provider.calls_for("create", "compute-service.app-service")
        assert observed.get("app-service") is None

    @pytest.mark.asyncio
    async def test_blocked_resources_converge_once_unblocked(
        self, engine, provider, artifacts, observed
    ):
        await engine.converge(web_stack(), observed)
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(web_stack(), observed)

        assert result.table()["app-registry"] == "no-op"
        assert result.applied() == ["app-service", "app-edge", "app-dns"]
        assert result.blocked == {}


# =============================================================================
# Failure Isolation
# =============================================================================


class TestFailureIsolation:
    """A failed resource fails alone; dependents skip, other branches continue."""

    @pytest.mark.asyncio
    async def test_dependents_skipped_independents_applied(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        provider.fail("create", "compute-service.app-service", ProviderError("boom", "memory"))
        stack = web_stack() + [Resource("other-registry", ResourceKind.REGISTRY)]

        result = await engine.converge(stack, observed)

        assert result.table() == {
            "app-registry": "applied",
            "other-registry": "applied",
            "app-service": "failed:[memory] boom",
            "app-edge": "skipped",
            "app-dns": "skipped",
        }
        assert result.outcomes["app-edge"].reason == "dependency 'app-service' failed"
        assert result.outcomes["app-dns"].reason == "dependency 'app-edge' skipped"
        assert not result.success
        assert result.failed() == ["app-service"]

        record = observed.get("app-service")
        assert record.state == LifecycleState.FAILED
        assert record.failure_reason == "[memory] boom"
        assert stack[1].state == LifecycleState.FAILED

    @pytest.mark.asyncio
    async def test_failed_resource_recovers_on_next_converge(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        provider.fail("create", "compute-service.app-service", ProviderError("boom", "memory"))
        await engine.converge(web_stack(), observed)

        result = await engine.converge(web_stack(), observed)

        assert result.success
        assert result.table()["app-service"] == "applied"
        assert result.table()["app-edge"] == "applied"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        provider.fail("create", "registry.app-registry", RuntimeError("kaput"))

        result = await engine.converge(web_stack(), observed)

        assert result.table()["app-registry"] == "failed:RuntimeError: kaput"
        assert result.status_of("app-service") == OutcomeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_update_failure_after_active_keeps_resource_updatable(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)
        stack = web_stack()
        stack[1].attributes["port"] = 9000
        provider.fail("update", "compute-service.app-service", ProviderError("no", "memory"))

        await engine.converge(stack, observed)
        record = observed.get("app-service")
        assert record.state == LifecycleState.FAILED
        assert record.ever_active

        result = await engine.converge(stack, observed)
        assert result.table()["app-service"] == "applied"
        assert len(provider.calls_for("update", "compute-service.app-service")) == 2


class TestRetry:
    """Transient provider failures are retried by the engine."""

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, providers, provider, artifacts, observed):
        engine = ConvergenceEngine(
            providers, retry_policy=RetryPolicy(max_attempts=3, backoff=NoBackoff())
        )
        provider.fail(
            "create",
            "registry.app-registry",
            ProviderError("busy", "memory", status_code=503, retryable=True),
        )

        result = await engine.converge(web_stack()[:1], observed)

        assert result.table() == {"app-registry": "applied"}
        assert len(provider.calls_for("create", "registry.app-registry")) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, providers, provider, observed):
        engine = ConvergenceEngine(
            providers, retry_policy=RetryPolicy(max_attempts=3, backoff=NoBackoff())
        )
        provider.fail(
            "create",
            "registry.app-registry",
            ProviderError("bad request", "memory", status_code=400),
        )

        result = await engine.converge(web_stack()[:1], observed)

        assert result.status_of("app-registry") == OutcomeStatus.FAILED
        assert len(provider.calls_for("create", "registry.app-registry")) == 1


# =============================================================================
# Concurrency and Cancellation
# =============================================================================


class TestConcurrency:
    """Tests for bounded parallelism."""

    @pytest.mark.asyncio
    async def test_max_parallel_bounds_provider_calls(self, observed):
        provider = InMemoryProvider(latency=0.02)
        engine = ConvergenceEngine(ProviderRegistry(provider), max_parallel=2, retry_policy=NO_RETRY)
        registries = [Resource(f"registry-{i}", ResourceKind.REGISTRY) for i in range(6)]

        result = await engine.converge(registries, observed)

        assert result.success
        assert provider.peak_concurrency == 2

    @pytest.mark.asyncio
    async def test_independent_resources_run_concurrently(self, observed):
        provider = InMemoryProvider(latency=0.02)
        engine = ConvergenceEngine(ProviderRegistry(provider), max_parallel=8, retry_policy=NO_RETRY)
        registries = [Resource(f"registry-{i}", ResourceKind.REGISTRY) for i in range(4)]

        await engine.converge(registries, observed)

        assert provider.peak_concurrency == 4

    @pytest.mark.asyncio
    async def test_dependent_waits_for_dependency(self, artifacts, observed):
        provider = InMemoryProvider(artifacts=artifacts, latency=0.01)
        engine = ConvergenceEngine(
            ProviderRegistry(provider, artifacts=artifacts), max_parallel=8, retry_policy=NO_RETRY
        )
        artifacts.publish("app", "production", "sha256:d1")

        await engine.converge(web_stack(), observed)

        assert provider.peak_concurrency == 1


class TestCancellation:
    """Tests for cooperative and task cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_context_starts_nothing(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        context = ApplyContext(environment="test")
        context.cancel()

        result = await engine.converge(web_stack(), observed, context)

        assert result.cancelled
        assert result.outcomes["app-registry"].reason == "cancelled"
        assert result.status_of("app-dns") == OutcomeStatus.SKIPPED
        assert provider.calls_for("create") == []

    @pytest.mark.asyncio
    async def test_task_cancel_marks_in_flight_failed_and_checkpoints(self, artifacts):
        backend = MemoryStateBackend()
        observed = ObservedState("test", backend)
        provider = InMemoryProvider(artifacts=artifacts, latency=0.2)
        engine = ConvergenceEngine(ProviderRegistry(provider, artifacts=artifacts), retry_policy=NO_RETRY)

        task = asyncio.create_task(engine.converge(web_stack(), observed))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        record = observed.get("app-registry")
        assert record.state == LifecycleState.FAILED
        assert record.failure_reason == "cancelled"
        assert backend.documents["test"]["resources"]["app-registry"]["state"] == "failed"

        reloaded = await ObservedState.load(backend, "test")
        assert not any(r.state.in_flight for r in reloaded)


# =============================================================================
# Replan Passes
# =============================================================================


def _pipeline_stack():
    return [
        Resource("registry", ResourceKind.REGISTRY, {"repository_name": "app"}),
        Resource("api", ResourceKind.COMPUTE_SERVICE, {"image": Reference("registry", "repository_uri")}),
        Resource(
            "pipeline",
            ResourceKind.PIPELINE,
            {
                "source": Reference("registry", "repository_uri"),
                "deploy_target": Reference("api", "endpoint", EdgeKind.BOOTSTRAP),
            },
        ),
    ]


class TestReplan:
    """Bootstrap references filled in by the wave are applied by a replan pass."""

    @pytest.mark.asyncio
    async def test_replan_updates_bootstrap_reference(self, artifacts, observed):
        provider = InMemoryProvider(artifacts=artifacts, latency=0.01)
        engine = ConvergenceEngine(
            ProviderRegistry(provider, artifacts=artifacts), retry_policy=NO_RETRY
        )
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(_pipeline_stack(), observed)

        assert result.success
        assert result.passes == 2
        assert len(provider.calls_for("update", "pipeline.pipeline")) == 1
        assert (
            observed.get("pipeline").attributes["deploy_target"]
            == observed.outputs_of("api")["endpoint"]
        )

    @pytest.mark.asyncio
    async def test_no_replan_passes(self, artifacts, observed):
        provider = InMemoryProvider(artifacts=artifacts, latency=0.01)
        engine = ConvergenceEngine(
            ProviderRegistry(provider, artifacts=artifacts),
            max_replan_passes=0,
            retry_policy=NO_RETRY,
        )
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(_pipeline_stack(), observed)

        assert result.passes == 1
        assert observed.get("pipeline").attributes["deploy_target"] is None

        # The next converge picks it up
        result = await engine.converge(_pipeline_stack(), observed)
        assert result.table()["pipeline"] == "applied"


# =============================================================================
# Destroy
# =============================================================================


class TestDestroy:
    """Tests for removing resources."""

    @pytest.mark.asyncio
    async def test_undeclared_resource_destroyed(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)

        result = await engine.converge(web_stack()[:3], observed)

        assert result.table()["app-dns"] == "applied"
        assert observed.get("app-dns").state == LifecycleState.DESTROYED
        assert "dns-record.app-dns" not in provider.resources

    @pytest.mark.asyncio
    async def test_teardown_destroys_dependents_first(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)

        result = await engine.teardown(observed)

        assert result.success
        assert _identifiers(provider.calls_for("destroy")) == [
            "dns-record.app-dns",
            "edge-distribution.app-edge",
            "compute-service.app-service",
            "registry.app-registry",
        ]
        assert provider.resources == {}
        assert observed.get("app-service").current_digest is None

    @pytest.mark.asyncio
    async def test_teardown_selection(self, engine, provider, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)

        await engine.teardown(observed, names=["app-edge"])

        assert _identifiers(provider.calls_for("destroy")) == [
            "dns-record.app-dns",
            "edge-distribution.app-edge",
        ]
        assert observed.is_active("app-service")

    @pytest.mark.asyncio
    async def test_failed_dependent_destroy_keeps_dependency(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)
        provider.fail("destroy", "dns-record.app-dns", ProviderError("locked", "memory"))

        result = await engine.teardown(observed)

        assert result.status_of("app-dns") == OutcomeStatus.FAILED
        assert result.outcomes["app-edge"].reason == "dependent 'app-dns' was not destroyed"
        assert observed.is_active("app-registry")

    @pytest.mark.asyncio
    async def test_failed_update_keeps_referenced_resource(
        self, engine, provider, artifacts, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        await engine.converge(web_stack(), observed)

        def without_edge():
            stack = [r for r in web_stack() if r.name != "app-edge"]
            stack[-1].attributes["target"] = "cdn.example.net"
            return stack

        provider.fail("update", "dns-record.app-dns", ProviderError("locked", "memory"))
        result = await engine.converge(without_edge(), observed)

        assert result.table()["app-dns"] == "failed:[memory] locked"
        assert result.table()["app-edge"] == "skipped"
        assert result.outcomes["app-edge"].reason == "dependent 'app-dns' still references it"
        assert observed.is_active("app-edge")
        assert provider.calls_for("destroy") == []

        # Once the record has moved off the edge, the edge goes
        result = await engine.converge(without_edge(), observed)

        assert result.table()["app-dns"] == "applied"
        assert result.table()["app-edge"] == "applied"
        assert observed.get("app-edge").state == LifecycleState.DESTROYED
        assert observed.get("app-dns").dependencies == []


# =============================================================================
# Secrets
# =============================================================================


def _secret_stack():
    stack = web_stack()
    stack[1].attributes["environment"] = {
        "DATABASE_URL": SecretReference("vault", "app/database-url"),
        "LOG_LEVEL": "info",
    }
    return stack


class TestSecrets:
    """Tests for secret binding during compute convergence."""

    @pytest.mark.asyncio
    async def test_grant_attached_to_execution_role(
        self, engine, artifacts, secret_store, observed
    ):
        artifacts.publish("app", "production", "sha256:d1")
        secret_store.add("vault", "app/database-url")

        result = await engine.converge(_secret_stack(), observed)

        assert result.success
        assert secret_store.grants[("vault", "app/database-url")] == {
            "arn:memory:role:app-service-instance"
        }
        environment = observed.get("app-service").attributes["environment"]
        assert environment["DATABASE_URL"] == {
            "$secret": {"store": "vault", "identifier": "app/database-url"}
        }

    @pytest.mark.asyncio
    async def test_missing_secret_fails_compute_only(self, engine, artifacts, observed):
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(_secret_stack(), observed)

        assert result.table()["app-service"] == "failed:secret_not_found"
        assert result.table()["app-edge"] == "skipped"
        assert result.table()["app-registry"] == "applied"

    @pytest.mark.asyncio
    async def test_access_denied(self, engine, artifacts, secret_store, observed):
        artifacts.publish("app", "production", "sha256:d1")
        secret_store.add("vault", "app/database-url")
        secret_store.deny("vault", "app/database-url")

        result = await engine.converge(_secret_stack(), observed)

        assert result.table()["app-service"] == "failed:access_denied"

    @pytest.mark.asyncio
    async def test_no_secret_store_denies(self, provider, artifacts, observed):
        engine = ConvergenceEngine(
            ProviderRegistry(provider, artifacts=artifacts), retry_policy=NO_RETRY
        )
        artifacts.publish("app", "production", "sha256:d1")

        result = await engine.converge(_secret_stack(), observed)

        assert result.table()["app-service"] == "failed:access_denied"


# =============================================================================
# Audit
# =============================================================================


class TestAudit:
    """One audit entry per apply."""

    @pytest.mark.asyncio
    async def test_entry_saved(self, providers, artifacts, observed):
        audit = InMemoryAuditRepository()
        engine = ConvergenceEngine(providers, retry_policy=NO_RETRY, audit=audit)
        artifacts.publish("app", "production", "sha256:d1")
        context = ApplyContext(environment="test", metadata={"trigger": "test"})

        result = await engine.converge(web_stack(), observed, context)

        entry = await audit.find_by_run_id(result.run_id)
        assert entry.status == "completed"
        assert entry.success
        assert entry.outcomes == result.table()
        assert entry.metadata == {"trigger": "test"}
        assert set(context.timings) == {"app-registry", "app-service", "app-edge", "app-dns"}

    @pytest.mark.asyncio
    async def test_failed_run_status(self, providers, provider, observed):
        audit = InMemoryAuditRepository()
        engine = ConvergenceEngine(providers, retry_policy=NO_RETRY, audit=audit)
        provider.fail("create", "registry.app-registry", ProviderError("x", "memory"))

        await engine.converge(web_stack()[:1], observed)

        assert (await audit.recent())[0].status == "failed"
