"""
Tests for collaborator health checks and the provider registry.
"""

import asyncio

import pytest

from converge.errors import ProviderError
from converge.providers import (
    HealthStatus,
    InMemoryArtifactRegistry,
    InMemoryProvider,
    InMemorySecretStore,
    ProviderHealthChecker,
    ProviderRegistry,
)
from converge.resources import ResourceKind


class MockCollaborator:
    """Collaborator with a configurable health check."""

    def __init__(self, name: str = "mock", healthy: bool = True, delay: float = 0.0, error: Exception | None = None):
        self._name = name
        self._healthy = healthy
        self._delay = delay
        self._error = error

    @property
    def name(self) -> str:
        return self._name

    async def health_check(self) -> bool:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        return self._healthy


class TestProviderHealthChecker:
    """Tests for single health checks."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        result = await ProviderHealthChecker().check(MockCollaborator(), "control_plane")
        assert result.status == HealthStatus.HEALTHY
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        result = await ProviderHealthChecker().check(MockCollaborator(healthy=False), "control_plane")
        assert result.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_error_is_unhealthy(self):
        result = await ProviderHealthChecker().check(
            MockCollaborator(error=ProviderError("down", "mock")), "control_plane"
        )
        assert result.status == HealthStatus.UNHEALTHY
        assert "down" in result.error

    @pytest.mark.asyncio
    async def test_without_health_check_is_healthy(self):
        result = await ProviderHealthChecker().check(InMemoryProvider(), "control_plane")
        assert result.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_timeout(self):
        checker = ProviderHealthChecker(timeout_seconds=0.01)
        result = await checker.check(MockCollaborator(delay=0.5), "control_plane")
        assert result.status == HealthStatus.UNHEALTHY

    def test_overall(self):
        from converge.providers import HealthCheckResult

        def result(status):
            return HealthCheckResult(provider_name="x", provider_type="t", status=status)

        assert ProviderHealthChecker.overall([]) == HealthStatus.UNKNOWN
        assert ProviderHealthChecker.overall([result(HealthStatus.HEALTHY)]) == HealthStatus.HEALTHY
        assert (
            ProviderHealthChecker.overall([result(HealthStatus.HEALTHY), result(HealthStatus.DEGRADED)])
            == HealthStatus.DEGRADED
        )
        assert (
            ProviderHealthChecker.overall([result(HealthStatus.DEGRADED), result(HealthStatus.UNHEALTHY)])
            == HealthStatus.UNHEALTHY
        )


class TestProviderRegistry:
    """Tests for provider lookup."""

    def test_default_serves_every_kind(self):
        provider = InMemoryProvider()
        registry = ProviderRegistry(provider)
        assert registry.get(ResourceKind.DNS_RECORD) is provider
        assert registry.default is provider

    def test_kind_registration_wins(self):
        default, dns = InMemoryProvider(), InMemoryProvider(name="dns")
        registry = ProviderRegistry(default)
        registry.register(ResourceKind.DNS_RECORD, dns)
        assert registry.get(ResourceKind.DNS_RECORD) is dns
        assert registry.get(ResourceKind.REGISTRY) is default

    def test_missing_provider(self):
        with pytest.raises(ProviderError, match="No provider registered"):
            ProviderRegistry().get(ResourceKind.REGISTRY)

    def test_register_validates_methods(self):
        with pytest.raises(ValueError):
            ProviderRegistry().register(ResourceKind.REGISTRY, MockCollaborator())

    def test_list_providers(self):
        registry = ProviderRegistry(
            InMemoryProvider(),
            artifacts=InMemoryArtifactRegistry(),
            secrets=InMemorySecretStore(),
        )
        assert registry.list_providers() == {
            "default": "memory",
            "by_kind": {},
            "artifacts": "memory-registry",
            "secrets": "memory-secrets",
        }

    @pytest.mark.asyncio
    async def test_check_health_each_collaborator_once(self):
        shared = MockCollaborator("control-plane")
        registry = ProviderRegistry(shared, artifacts=MockCollaborator("oci"), secrets=shared)

        results = await registry.check_health()

        assert [r.provider_name for r in results] == ["control-plane", "oci"]
        assert ProviderHealthChecker.overall(results) == HealthStatus.HEALTHY
