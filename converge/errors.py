"""
Error classes for converge.

Errors carry enough context for the engine to decide what happens next:

- DeclarationError / CycleError: fatal, raised before anything is applied
- BootstrapRequired: fatal for one resource, recoverable by publishing the
  placeholder artifact and replanning
- ReferenceUnresolved: not a failure, the resource is blocked until a replan
- ProviderError: wraps collaborator failures, `retryable` marks transient ones
- SecretNotFound / AccessDenied: fatal for one resource, never carry secret
  content in their message

Failures are always reported per resource, never as one opaque error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from converge.resources.base import LifecycleState, Reference


class ConvergeError(Exception):
    """Base exception for converge."""


class DeclarationError(ConvergeError):
    """Raised when declared configuration is invalid."""


class StateError(ConvergeError):
    """Raised when persisted observed state cannot be used."""


class CycleError(ConvergeError):
    """Raised when the graph has a cycle without any bootstrap edge."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle without a bootstrap edge: {' -> '.join(self.cycle)}")


class InvalidTransition(ConvergeError):
    """Raised when a lifecycle transition is not allowed."""

    def __init__(self, resource: str, current: LifecycleState, target: LifecycleState):
        self.resource = resource
        self.current = current
        self.target = target
        super().__init__(
            f"Resource '{resource}' cannot move from {current.value} to {target.value}"
        )


class BootstrapRequired(ConvergeError):
    """
    Raised when a placeholder artifact must be published before first convergence.

    The sequencer never publishes the artifact itself.
    """

    def __init__(self, resource: str, repository: str, tag: str):
        self.resource = resource
        self.repository = repository
        self.tag = tag
        super().__init__(
            f"BootstrapRequired: publish a placeholder artifact at "
            f"{repository}:{tag} before converging '{resource}'"
        )


class ReferenceUnresolved(ConvergeError):
    """Raised when a reference cannot be resolved yet."""

    def __init__(self, resource: str, reference: Reference, detail: str = ""):
        self.resource = resource
        self.reference = reference
        self.detail = detail
        message = f"ReferenceUnresolved: '{resource}' needs {reference.describe()}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ResourceBusy(ConvergeError):
    """Raised when another writer already holds a resource."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"Resource '{resource}' has an action in flight")


class ProviderError(ConvergeError):
    """Failure reported by an external collaborator."""

    def __init__(
        self,
        message: str,
        provider: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        parts = [f"[{self.provider}] {self.args[0]}"]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


class RateLimitError(ProviderError):
    """Raised when the collaborator throttles requests (429)."""

    def __init__(self, message: str, provider: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, provider, retryable=True, **kwargs)
        self.retry_after = retry_after


class SecretBindingError(ConvergeError):
    """
    Base class for secret binding failures.

    Only the locator is ever part of the message.
    """

    reason = "secret_binding_failed"

    def __init__(self, store: str, identifier: str, resource: str = ""):
        self.store = store
        self.identifier = identifier
        self.resource = resource
        target = f" for '{resource}'" if resource else ""
        super().__init__(f"{type(self).__name__}: {store}/{identifier}{target}")


class SecretNotFound(SecretBindingError):
    """The secret locator does not exist in the store."""

    reason = "secret_not_found"


class AccessDenied(SecretBindingError):
    """The store refused to attach the grant."""

    reason = "access_denied"


__all__ = [
    "AccessDenied",
    "BootstrapRequired",
    "ConvergeError",
    "CycleError",
    "DeclarationError",
    "InvalidTransition",
    "ProviderError",
    "RateLimitError",
    "ReferenceUnresolved",
    "ResourceBusy",
    "SecretBindingError",
    "SecretNotFound",
    "StateError",
]
