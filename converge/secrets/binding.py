"""
Secret Binding.

Attaches read access to secrets for a compute resource's execution
identity. Values are never fetched: the compute runtime reads them at
start-up using the grant attached here.

Errors raised from this module carry the locator and nothing else. The
collaborator's own exception is dropped because its message may quote
the store response.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from converge.errors import AccessDenied, ProviderError, SecretBindingError, SecretNotFound
from converge.providers.base import SecretStore
from converge.resources import Resource, SecretReference, iter_secret_references

logger = logging.getLogger(__name__)

PRINCIPAL_OUTPUT = "execution_role"


class MissingPrincipal(SecretBindingError):
    """The compute resource exposes no execution identity to grant access to."""

    reason = "missing_execution_identity"


class SecretBinder:
    """
    Grants secret access to compute resources.

    Usage:
        binder = SecretBinder(secret_store)
        await binder.bind(api, SecretReference("vault", "db-password"), role_arn)
    """

    def __init__(self, store: SecretStore | None):
        self.store = store

    async def bind(self, resource: Resource, reference: SecretReference, principal: str) -> None:
        """
        Attach a read grant. Granting an existing grant succeeds.

        Raises:
            SecretNotFound: The locator does not exist
            AccessDenied: The store refused the grant
        """
        if self.store is None:
            raise AccessDenied(reference.store, reference.identifier, resource.name)

        try:
            await self.store.grant_access(reference.store, reference.identifier, principal)
        except SecretNotFound:
            raise SecretNotFound(reference.store, reference.identifier, resource.name) from None
        except AccessDenied:
            raise AccessDenied(reference.store, reference.identifier, resource.name) from None
        except ProviderError as e:
            if e.status_code == 404:
                raise SecretNotFound(
                    reference.store, reference.identifier, resource.name
                ) from None
            if e.status_code in (401, 403):
                raise AccessDenied(reference.store, reference.identifier, resource.name) from None
            raise ProviderError(
                f"Secret grant for {reference.locator} failed",
                e.provider,
                status_code=e.status_code,
                retryable=e.retryable,
            ) from None

        logger.info(f"[secrets] Granted {reference.locator} to '{resource.name}'")

    async def bind_all(
        self,
        resource: Resource,
        attributes: Mapping[str, Any],
        outputs: Mapping[str, Any],
    ) -> list[SecretReference]:
        """Bind every secret referenced in `attributes`; returns the bound locators."""
        references = list(dict.fromkeys(iter_secret_references(attributes)))
        if not references:
            return []

        principal = outputs.get(PRINCIPAL_OUTPUT) or attributes.get(PRINCIPAL_OUTPUT)
        if not isinstance(principal, str) or not principal:
            first = references[0]
            raise MissingPrincipal(first.store, first.identifier, resource.name)

        for reference in references:
            await self.bind(resource, reference, principal)
        return references
