"""
Observed state for converge.

ObservedState is the process-scoped record of what the engine last saw
for every resource it manages: lifecycle state, the normalized attributes
it applied, outputs, dependencies and the release trigger's cached digest.
It is passed explicitly into plan and apply and checkpointed after every
lifecycle transition.

Backends:
- MemoryStateBackend: tests and dry runs
- FileStateBackend: one JSON document per environment, replaced atomically
- RedisStateBackend: one JSON document per environment in Redis
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from converge.errors import InvalidTransition, StateError
from converge.resources import LifecycleState, Resource, ResourceKind, can_transition

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Observed Resource
# =============================================================================


@dataclass
class ObservedResource:
    """
    Last observed view of one resource.

    Attributes are stored normalized: references as `{"$ref": ...}` and
    secrets as `{"$secret": {...}}` locators, never resolved values.
    """

    name: str
    kind: ResourceKind
    identifier: str
    state: LifecycleState = LifecycleState.DECLARED
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    current_digest: str | None = None
    ever_active: bool = False
    failure_reason: str | None = None
    updated_at: datetime = field(default_factory=_utc_now)

    @classmethod
    def for_resource(cls, resource: Resource) -> ObservedResource:
        return cls(name=resource.name, kind=resource.kind, identifier=resource.identifier)

    def transition(self, target: LifecycleState, reason: str | None = None) -> LifecycleState:
        """Move to `target`, returning the previous state."""
        if not can_transition(self.state, target):
            raise InvalidTransition(self.name, self.state, target)
        previous = self.state
        self.state = target
        self.failure_reason = reason if target == LifecycleState.FAILED else None
        if target == LifecycleState.ACTIVE:
            self.ever_active = True
        self.updated_at = _utc_now()
        return previous

    @property
    def is_active(self) -> bool:
        return self.state == LifecycleState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "state": self.state.value,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "current_digest": self.current_digest,
            "ever_active": self.ever_active,
            "failure_reason": self.failure_reason,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservedResource:
        try:
            return cls(
                name=data["name"],
                kind=ResourceKind(data["kind"]),
                identifier=data["identifier"],
                state=LifecycleState(data.get("state", LifecycleState.DECLARED.value)),
                attributes=dict(data.get("attributes", {})),
                outputs=dict(data.get("outputs", {})),
                dependencies=list(data.get("dependencies", [])),
                current_digest=data.get("current_digest"),
                ever_active=bool(data.get("ever_active", False)),
                failure_reason=data.get("failure_reason"),
                updated_at=(
                    datetime.fromisoformat(data["updated_at"])
                    if data.get("updated_at")
                    else _utc_now()
                ),
            )
        except (KeyError, ValueError) as e:
            raise StateError(f"Malformed observed resource record: {e}") from e


# =============================================================================
# Backends
# =============================================================================


class StateBackend(Protocol):
    """Protocol for persisting observed state documents."""

    async def load(self, environment: str) -> dict[str, Any] | None:
        """Return the stored document, or None if nothing was stored yet."""
        ...

    async def save(self, environment: str, document: dict[str, Any]) -> None:
        ...


class MemoryStateBackend:
    """Keeps documents in a dict. Not suitable for production use."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.saves = 0

    async def load(self, environment: str) -> dict[str, Any] | None:
        document = self.documents.get(environment)
        return json.loads(json.dumps(document)) if document is not None else None

    async def save(self, environment: str, document: dict[str, Any]) -> None:
        self.documents[environment] = json.loads(json.dumps(document, default=str))
        self.saves += 1


class FileStateBackend:
    """
    One JSON file per environment under `directory`.

    Writes go to a temporary file in the same directory which then
    replaces the state file, so a crash never leaves a partial document.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, environment: str) -> Path:
        return self.directory / f"{environment}.state.json"

    async def load(self, environment: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read, self.path_for(environment))

    async def save(self, environment: str, document: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(environment), document)

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state file {path}: {e}") from e

    @staticmethod
    def _write(path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class RedisStateBackend:
    """
    Redis-backed observed state.

    Storage Format:
        - Key: f"converge:state:{environment}"
        - Value: JSON serialized state document

    Example:
        backend = RedisStateBackend(redis_url="redis://localhost:6379")
        state = await ObservedState.load(backend, "production")
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "converge:state",
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client: Any = client  # redis.asyncio.Redis

    async def _get_client(self) -> Any:
        """Get or create Redis client."""
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                raise ImportError(
                    "redis package required for RedisStateBackend. Install with: pip install redis"
                )
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _key(self, environment: str) -> str:
        return f"{self._key_prefix}:{environment}"

    async def load(self, environment: str) -> dict[str, Any] | None:
        client = await self._get_client()
        data = await client.get(self._key(environment))
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state document for '{environment}': {e}") from e

    async def save(self, environment: str, document: dict[str, Any]) -> None:
        client = await self._get_client()
        await client.set(self._key(environment), json.dumps(document, sort_keys=True, default=str))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Observed State
# =============================================================================


class ObservedState:
    """
    Observed state of one environment.

    Usage:
        state = await ObservedState.load(FileStateBackend(".converge"), "production")
        plan = planner.plan(resources, state)
        await engine.apply(plan, state)
    """

    def __init__(
        self,
        environment: str = "default",
        backend: StateBackend | None = None,
        resources: dict[str, ObservedResource] | None = None,
    ):
        self.environment = environment
        self.backend = backend or MemoryStateBackend()
        self.resources: dict[str, ObservedResource] = dict(resources or {})
        self._save_lock = asyncio.Lock()

    @classmethod
    async def load(cls, backend: StateBackend, environment: str) -> ObservedState:
        """
        Load state for `environment`.

        Records left mid-transition by an interrupted run come back as
        failed so the next plan retries them.

        Raises:
            StateError: The stored document belongs to another environment
                or has an unknown version
        """
        document = await backend.load(environment)
        if document is None:
            logger.info(f"No observed state for '{environment}', starting empty")
            return cls(environment, backend)

        stored_env = document.get("environment")
        if stored_env != environment:
            raise StateError(
                f"State document belongs to environment '{stored_env}', not '{environment}'"
            )
        if document.get("version", STATE_VERSION) != STATE_VERSION:
            raise StateError(f"Unsupported state version {document.get('version')}")

        resources: dict[str, ObservedResource] = {}
        for name, data in document.get("resources", {}).items():
            record = ObservedResource.from_dict(data)
            if record.state in (
                LifecycleState.PLANNED,
                LifecycleState.APPLYING,
                LifecycleState.UPDATING,
                LifecycleState.DESTROYING,
            ):
                logger.warning(
                    f"Resource '{name}' was left {record.state.value} by an interrupted run"
                )
                record.state = LifecycleState.FAILED
                record.failure_reason = "interrupted"
            resources[name] = record
        return cls(environment, backend, resources)

    # ==================== Access ====================

    def get(self, name: str) -> ObservedResource | None:
        return self.resources.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def __iter__(self) -> Iterator[ObservedResource]:
        return iter(self.resources.values())

    def __len__(self) -> int:
        return len(self.resources)

    def ensure(self, resource: Resource) -> ObservedResource:
        """Return the record for `resource`, creating a declared one if needed."""
        record = self.resources.get(resource.name)
        if record is None:
            record = ObservedResource.for_resource(resource)
            self.resources[resource.name] = record
        return record

    def remove(self, name: str) -> None:
        self.resources.pop(name, None)

    def is_active(self, name: str) -> bool:
        record = self.resources.get(name)
        return record is not None and record.is_active

    def outputs_of(self, name: str) -> dict[str, Any]:
        record = self.resources.get(name)
        return dict(record.outputs) if record else {}

    def set_digest(self, name: str, digest: str) -> None:
        """Cache the digest a compute resource last acted on."""
        record = self.resources.get(name)
        if record is None:
            raise StateError(f"Resource '{name}' has no observed state")
        record.current_digest = digest
        record.updated_at = _utc_now()

    # ==================== Persistence ====================

    def snapshot(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "environment": self.environment,
            "saved_at": _utc_now().isoformat(),
            "resources": {name: r.to_dict() for name, r in self.resources.items()},
        }

    async def checkpoint(self) -> None:
        """Persist the current state. Checkpoints are serialized."""
        document = self.snapshot()
        async with self._save_lock:
            await self.backend.save(self.environment, document)
