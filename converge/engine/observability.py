"""
Observability for converge.

Provides structured logging and an audit trail for plan/apply runs.

Every value that reaches a log record goes through `redact()`: secret
references render as their locator and are never resolved, so a log line
can name a secret but never carry its content.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import SecretStr

from converge.errors import DeclarationError
from converge.resources import Reference, SecretReference
from converge.resources.secrets import SECRET_MARKER, is_secret_marker

logger = logging.getLogger(__name__)

REDACTED = "**********"


# =============================================================================
# Redaction
# =============================================================================


def redact(value: Any) -> Any:
    """
    Return a copy of `value` safe for logs, plans and persisted state.

    - SecretReference and `{"$secret": ...}` markers become "secret:<store>/<identifier>"
    - SecretStr becomes a fixed mask
    - References become their "name.output" form
    """
    if isinstance(value, SecretReference):
        return f"secret:{value.locator}"
    if isinstance(value, SecretStr):
        return REDACTED
    if isinstance(value, Reference):
        return value.describe()
    if isinstance(value, dict):
        if is_secret_marker(value):
            try:
                return f"secret:{SecretReference.from_dict(value).locator}"
            except (DeclarationError, AttributeError):
                return {SECRET_MARKER: REDACTED}
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


# =============================================================================
# Log Levels
# =============================================================================


class LogLevel(Enum):
    """Standard log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class StructuredLogger(Protocol):
    """Structured loggers emit key-value records rather than plain strings."""

    def debug(self, message: str, **context: Any) -> None: ...

    def info(self, message: str, **context: Any) -> None: ...

    def warning(self, message: str, **context: Any) -> None: ...

    def error(self, message: str, **context: Any) -> None: ...


# =============================================================================
# JSON Logger
# =============================================================================


@dataclass
class JSONLogger:
    """
    Structured logger that outputs JSON-formatted logs.

    Example output:
        {"timestamp": "2026-01-02T10:30:00+00:00", "level": "info",
         "message": "Apply started", "run_id": "abc-123", "actions": 7}
    """

    name: str = "converge"
    run_id: str | None = None
    extra_context: dict[str, Any] = field(default_factory=dict)
    _python_logger: logging.Logger = field(init=False)

    def __post_init__(self) -> None:
        self._python_logger = logging.getLogger(self.name)

    def _log(self, level: LogLevel, message: str, context: dict[str, Any]) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "message": message,
            **self.extra_context,
            **redact(context),
        }

        if self.run_id:
            record["run_id"] = self.run_id

        getattr(self._python_logger, level.value)(json.dumps(record, default=str))

    def debug(self, message: str, **context: Any) -> None:
        self._log(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(LogLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(LogLevel.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(LogLevel.ERROR, message, context)

    def with_context(self, **extra: Any) -> JSONLogger:
        """Create a new logger with additional context."""
        return JSONLogger(
            name=self.name,
            run_id=self.run_id,
            extra_context={**self.extra_context, **redact(extra)},
        )


# =============================================================================
# Convergence Logger
# =============================================================================


@dataclass
class ConvergenceLogger:
    """
    Logger for plan/apply runs and release triggers.

    Example:
        log = ConvergenceLogger(run_id="abc-123", environment="production")
        log.plan_computed(actions={"api": "create"}, blocked={})
        log.resource_transition("api", "planned", "applying")
        log.apply_completed(success=True, duration_ms=5000.0, outcomes={...})
    """

    run_id: str
    environment: str = ""
    inner: StructuredLogger = field(default_factory=JSONLogger)

    def __post_init__(self) -> None:
        if isinstance(self.inner, JSONLogger):
            self.inner = JSONLogger(
                name="converge.engine",
                run_id=self.run_id,
                extra_context={"environment": self.environment} if self.environment else {},
            )

    # Planning
    def plan_computed(self, actions: dict[str, str], blocked: dict[str, str]) -> None:
        self.inner.info(
            "Plan computed",
            actions=actions,
            action_count=len(actions),
            blocked=blocked,
        )

    def resource_blocked(self, resource: str, reason: str) -> None:
        self.inner.info("Resource blocked", resource=resource, reason=reason)

    # Apply lifecycle
    def apply_started(self, actions: int, max_parallel: int) -> None:
        self.inner.info("Apply started", actions=actions, max_parallel=max_parallel)

    def apply_completed(
        self,
        success: bool,
        duration_ms: float,
        outcomes: dict[str, str],
        passes: int = 1,
    ) -> None:
        context = {
            "success": success,
            "duration_ms": round(duration_ms, 2),
            "outcomes": outcomes,
            "passes": passes,
        }
        if success:
            self.inner.info("Apply completed", **context)
        else:
            self.inner.error("Apply finished with failures", **context)

    def resource_transition(self, resource: str, from_state: str, to_state: str) -> None:
        self.inner.debug(
            "Resource transition",
            resource=resource,
            from_state=from_state,
            to_state=to_state,
        )

    def resource_failed(self, resource: str, error: str, error_type: str) -> None:
        self.inner.error(
            "Resource failed",
            resource=resource,
            error=error,
            error_type=error_type,
        )

    # Retry
    def retry_attempt(
        self,
        operation: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay_ms: float,
    ) -> None:
        self.inner.warning(
            "Retry attempt",
            operation=operation,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
            delay_ms=round(delay_ms, 2),
        )

    # Release trigger
    def release_triggered(
        self,
        resource: str,
        status: str,
        digest: str | None,
        previous_digest: str | None,
    ) -> None:
        self.inner.info(
            "Release trigger",
            resource=resource,
            status=status,
            digest=digest,
            previous_digest=previous_digest,
        )


# =============================================================================
# Audit Entry
# =============================================================================


@dataclass
class AuditEntry:
    """
    Audit log entry for one apply run.

    Outcomes are stored per resource as their table value
    ("applied", "no-op", "skipped", "failed:<reason>").
    """

    run_id: str
    environment: str
    timestamp: datetime
    status: str  # "completed", "failed", "cancelled"
    duration_ms: float | None = None
    success: bool | None = None
    outcomes: dict[str, str] = field(default_factory=dict)
    blocked: dict[str, str] = field(default_factory=dict)
    passes: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "outcomes": self.outcomes,
            "blocked": self.blocked,
            "passes": self.passes,
            "metadata": redact(self.metadata),
        }


class AuditRepository(Protocol):
    """Protocol for persisting audit entries."""

    async def save(self, entry: AuditEntry) -> None: ...

    async def find_by_run_id(self, run_id: str) -> AuditEntry | None: ...

    async def recent(self, limit: int = 20) -> list[AuditEntry]: ...


@dataclass
class InMemoryAuditRepository:
    """
    In-memory audit repository.

    Not suitable for production use.
    """

    entries: list[AuditEntry] = field(default_factory=list)
    max_entries: int = 1000

    async def save(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

        # Prevent unbounded growth
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries :]

    async def find_by_run_id(self, run_id: str) -> AuditEntry | None:
        for entry in reversed(self.entries):
            if entry.run_id == run_id:
                return entry
        return None

    async def recent(self, limit: int = 20) -> list[AuditEntry]:
        return list(reversed(self.entries[-limit:]))

    def clear(self) -> None:
        self.entries.clear()
