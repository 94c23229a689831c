"""
Dependency Injection for converge.

Provides the settings singleton and the service container shared by the
HTTP endpoints: collaborators, engine, observed state, stack loader and
release watcher.

Collaborators are chosen from settings:
    CONVERGE_CONTROL_PLANE_URL set -> ControlPlaneClient (provider and secret store)
    CONVERGE_REGISTRY_URL set      -> OCIRegistryClient
    otherwise                      -> in-memory implementations
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from converge.config import AppSettings, FileStackLoader
from converge.config.loader import StaticStackLoader, declare_resources
from converge.engine import (
    ConvergenceEngine,
    FileStateBackend,
    InMemoryAuditRepository,
    MemoryStateBackend,
    ObservedState,
    RedisStateBackend,
    StateBackend,
)
from converge.providers import (
    ControlPlaneClient,
    HttpClientConfig,
    InMemoryArtifactRegistry,
    InMemoryProvider,
    InMemorySecretStore,
    OCIRegistryClient,
    ProviderRegistry,
)
from converge.release import ReleaseTrigger, ReleaseWatcher
from converge.resources import ResourceKind

logger = logging.getLogger(__name__)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get application settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return AppSettings(
        # Service
        service_name=os.getenv("CONVERGE_SERVICE_NAME", "converge"),
        environment=os.getenv("CONVERGE_ENVIRONMENT", "development"),
        debug=os.getenv("CONVERGE_DEBUG", "false").lower() == "true",
        # Declared configuration and state
        stack_file=os.getenv("CONVERGE_STACK_FILE", "stack.yaml"),
        state_backend=os.getenv("CONVERGE_STATE_BACKEND", "file"),
        state_dir=os.getenv("CONVERGE_STATE_DIR", ".converge"),
        redis_url=os.getenv("CONVERGE_REDIS_URL", "redis://localhost:6379"),
        # Collaborators
        control_plane_url=os.getenv("CONVERGE_CONTROL_PLANE_URL", ""),
        control_plane_token=os.getenv("CONVERGE_CONTROL_PLANE_TOKEN", ""),
        registry_url=os.getenv("CONVERGE_REGISTRY_URL", ""),
        registry_token=os.getenv("CONVERGE_REGISTRY_TOKEN", ""),
        http_timeout=float(os.getenv("CONVERGE_HTTP_TIMEOUT", "30")),
        # Engine
        max_parallel=int(os.getenv("CONVERGE_MAX_PARALLEL", "4")),
        max_replan_passes=int(os.getenv("CONVERGE_MAX_REPLAN_PASSES", "1")),
        # Release trigger
        release_poll_interval=float(os.getenv("CONVERGE_RELEASE_POLL_INTERVAL", "0")),
        webhook_token=os.getenv("CONVERGE_WEBHOOK_TOKEN", ""),
    )


@dataclass
class ConvergeServices:
    """Everything the endpoints need, built once per process."""

    providers: ProviderRegistry
    engine: ConvergenceEngine
    observed: ObservedState
    loader: FileStackLoader | StaticStackLoader
    watcher: ReleaseWatcher
    audit: InMemoryAuditRepository
    apply_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# Global instance (initialized on startup or by set_services)
_services: Optional[ConvergeServices] = None


def build_providers(settings: AppSettings) -> ProviderRegistry:
    """Collaborators selected by settings."""
    if settings.control_plane_url:
        control_plane = ControlPlaneClient(
            HttpClientConfig(
                base_url=settings.control_plane_url,
                api_token=settings.control_plane_token.get_secret_value() or None,
                timeout=settings.http_timeout,
            )
        )
        provider, secrets = control_plane, control_plane
    else:
        logger.warning("No control plane configured, using the in-memory provider")
        provider, secrets = None, InMemorySecretStore()

    if settings.registry_url:
        artifacts = OCIRegistryClient(
            HttpClientConfig(
                base_url=settings.registry_url,
                api_token=settings.registry_token.get_secret_value() or None,
                timeout=settings.http_timeout,
            )
        )
    else:
        artifacts = InMemoryArtifactRegistry()

    if provider is None:
        memory_artifacts = artifacts if isinstance(artifacts, InMemoryArtifactRegistry) else None
        provider = InMemoryProvider(artifacts=memory_artifacts)

    return ProviderRegistry(provider, artifacts=artifacts, secrets=secrets)


def build_state_backend(settings: AppSettings) -> StateBackend:
    """Observed state backend selected by CONVERGE_STATE_BACKEND."""
    if settings.state_backend == "memory":
        return MemoryStateBackend()
    if settings.state_backend == "redis":
        return RedisStateBackend(redis_url=settings.redis_url)
    if settings.state_backend == "file":
        return FileStateBackend(settings.state_dir)
    raise ValueError(f"Unknown state backend: {settings.state_backend}")


async def build_services(settings: AppSettings) -> ConvergeServices:
    """Load the stack and observed state and wire the engine and release watcher."""
    providers = build_providers(settings)
    loader = FileStackLoader(settings.stack_file)
    stack = await loader.load()

    backend = build_state_backend(settings)
    observed = await ObservedState.load(backend, stack.environment)

    audit = InMemoryAuditRepository()
    engine = ConvergenceEngine(
        providers,
        max_parallel=settings.max_parallel,
        max_replan_passes=settings.max_replan_passes,
        audit=audit,
    )

    resources = {r.name: r for r in declare_resources(stack)}
    watcher = ReleaseWatcher(interval=settings.release_poll_interval or 60.0)
    for binding in stack.releases:
        resource = resources.get(binding.resource)
        if resource is None or resource.kind != ResourceKind.COMPUTE_SERVICE:
            logger.warning(f"Release binding for unknown compute resource '{binding.resource}'")
            continue
        trigger = ReleaseTrigger.for_resource(
            resource,
            resources,
            observed=observed,
            provider=providers.get(resource.kind),
            artifacts=providers.artifacts,
            locks=engine.locks,
        )
        if binding.tag:
            trigger.tag = binding.tag
        watcher.add(trigger)

    return ConvergeServices(
        providers=providers,
        engine=engine,
        observed=observed,
        loader=loader,
        watcher=watcher,
        audit=audit,
    )


def get_services() -> ConvergeServices:
    """FastAPI dependency: the service container."""
    if _services is None:
        raise RuntimeError("Services are not initialized")
    return _services


def set_services(services: Optional[ConvergeServices]) -> None:
    """Replace the service container (tests, embedding)."""
    global _services
    _services = services


async def initialize_services() -> None:
    """
    Initialize all services on application startup.

    Called from FastAPI lifespan. A container installed with set_services()
    is kept as is.
    """
    global _services
    settings = get_settings()
    if _services is None:
        _services = await build_services(settings)
    if settings.release_poll_interval > 0 and _services.watcher.triggers:
        _services.watcher.start()


async def shutdown_services() -> None:
    """
    Cleanup all services on application shutdown.

    Called from FastAPI lifespan.
    """
    if _services is None:
        return
    await _services.watcher.stop()
    seen: set[int] = set()
    for collaborator in (
        _services.providers.default,
        _services.providers.artifacts,
        _services.providers.secrets,
        _services.observed.backend,
    ):
        close = getattr(collaborator, "close", None)
        if close is not None and id(collaborator) not in seen:
            seen.add(id(collaborator))
            await close()
