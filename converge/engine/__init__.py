"""
Convergence engine: planning, apply, observed state and the supporting
retry, locking and observability pieces.
"""

from .bootstrap import ArtifactSource, BootstrapSequencer, artifact_sources
from .context import ApplyContext
from .executor import ApplyResult, ConvergenceEngine, OutcomeStatus, ResourceOutcome
from .locks import ResourceLocks
from .observability import (
    AuditEntry,
    AuditRepository,
    ConvergenceLogger,
    InMemoryAuditRepository,
    JSONLogger,
    redact,
)
from .plan import (
    ActionType,
    Plan,
    PlannedAction,
    Planner,
    Resolution,
    decide_action,
    lookup_reference,
    resolve_attributes,
)
from .retry import (
    NO_RETRY,
    PROVIDER_RETRY,
    BackoffStrategy,
    ConstantBackoff,
    ExponentialBackoff,
    NoBackoff,
    RetryPolicy,
    RetryResult,
    with_retry,
)
from .state import (
    FileStateBackend,
    MemoryStateBackend,
    RedisStateBackend,
    ObservedResource,
    ObservedState,
    StateBackend,
)

__all__ = [
    # Bootstrap
    "ArtifactSource",
    "BootstrapSequencer",
    "artifact_sources",
    # Apply
    "ApplyContext",
    "ApplyResult",
    "ConvergenceEngine",
    "OutcomeStatus",
    "ResourceLocks",
    "ResourceOutcome",
    # Planning
    "ActionType",
    "Plan",
    "PlannedAction",
    "Planner",
    "Resolution",
    "decide_action",
    "lookup_reference",
    "resolve_attributes",
    # State
    "FileStateBackend",
    "MemoryStateBackend",
    "RedisStateBackend",
    "ObservedResource",
    "ObservedState",
    "StateBackend",
    # Observability
    "AuditEntry",
    "AuditRepository",
    "ConvergenceLogger",
    "InMemoryAuditRepository",
    "JSONLogger",
    "redact",
    # Retry
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "NO_RETRY",
    "NoBackoff",
    "PROVIDER_RETRY",
    "RetryPolicy",
    "RetryResult",
    "with_retry",
]
