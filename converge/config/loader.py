"""
Stack Loaders.

Turn a stack file into declared Resources.

- FileStackLoader: YAML or JSON file (development, CI)
- StaticStackLoader: an in-memory StackDefinition (tests, the service
  when the stack is built in code)

Usage:
    loader = FileStackLoader("stack.yaml")
    stack = await loader.load()
    resources = declare_resources(stack)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from converge.errors import DeclarationError
from converge.resources import Reference, Resource, ResourceKind, SecretReference
from converge.resources.secrets import SECRET_MARKER

from .schemas import StackDefinition, StackOptions

logger = logging.getLogger(__name__)

REF_MARKER = "$ref"


# =============================================================================
# Marker Parsing
# =============================================================================


def parse_value(value: Any) -> Any:
    """Replace `$ref` and `$secret` markers with Reference and SecretReference."""
    if isinstance(value, dict):
        if REF_MARKER in value:
            extra = set(value) - {REF_MARKER, "bootstrap"}
            if extra:
                raise DeclarationError(f"Unexpected keys next to $ref: {sorted(extra)}")
            expression = value[REF_MARKER]
            if not isinstance(expression, str):
                raise DeclarationError(f"$ref must be a string, got {expression!r}")
            return Reference.parse(expression, bootstrap=bool(value.get("bootstrap", False)))
        if SECRET_MARKER in value:
            if set(value) != {SECRET_MARKER} or not isinstance(value[SECRET_MARKER], dict):
                raise DeclarationError("$secret must map to {store, identifier}")
            return SecretReference.from_dict(value)
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    return value


# =============================================================================
# Cross-cutting Options
# =============================================================================


def apply_options(resources: Iterable[Resource], options: StackOptions) -> None:
    """
    Apply stack options in place. Values declared on a resource win.

    - edge: domain alias, certificate binding, price class, WAF reference
    - certificate: domain name
    - compute: extra runtime environment variables
    """
    resources = list(resources)
    certificate = next((r for r in resources if r.kind == ResourceKind.CERTIFICATE), None)

    for resource in resources:
        attributes = resource.attributes
        if resource.kind == ResourceKind.EDGE_DISTRIBUTION:
            if options.domain_name:
                aliases = list(attributes.get("aliases", []))
                if options.domain_name not in aliases:
                    aliases.append(options.domain_name)
                attributes["aliases"] = aliases
                if certificate is not None:
                    attributes.setdefault("certificate_arn", Reference(certificate.name, "arn"))
            if options.price_class:
                attributes.setdefault("price_class", options.price_class)
            if options.web_acl_reference:
                attributes.setdefault("web_acl_id", options.web_acl_reference)

        elif resource.kind == ResourceKind.CERTIFICATE:
            if options.domain_name:
                attributes.setdefault("domain_name", options.domain_name)

        elif resource.kind == ResourceKind.COMPUTE_SERVICE:
            if options.extra_runtime_environment_variables:
                attributes["environment"] = {
                    **options.extra_runtime_environment_variables,
                    **attributes.get("environment", {}),
                }


def declare_resources(stack: StackDefinition) -> list[Resource]:
    """Resources of a stack, markers parsed and options applied."""
    resources = [
        Resource(
            name=declaration.name,
            kind=declaration.kind,
            attributes=parse_value(declaration.attributes),
        )
        for declaration in stack.resources
    ]
    apply_options(resources, stack.options)
    return resources


# =============================================================================
# Loaders
# =============================================================================


class FileStackLoader:
    """
    Loads a stack definition from a YAML or JSON file.

    File Format (stack.yaml):
        environment: production
        options:
          domain_name: api.example.com
        resources:
          - name: registry
            kind: registry
          - name: api
            kind: compute-service
            attributes:
              image: {$ref: registry.repository_uri}
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def load(self) -> StackDefinition:
        """
        Raises:
            DeclarationError: Missing, unreadable or invalid stack file
        """
        data = await asyncio.to_thread(self._read)
        try:
            stack = StackDefinition.model_validate(data)
        except ValidationError as e:
            raise DeclarationError(f"Invalid stack file {self.path}: {e}") from e
        logger.info(f"[stack] Loaded {len(stack.resources)} resources from {self.path}")
        return stack

    async def load_resources(self) -> list[Resource]:
        return declare_resources(await self.load())

    def _read(self) -> Any:
        if not self.path.exists():
            raise DeclarationError(f"Stack file not found: {self.path}")
        try:
            with self.path.open(encoding="utf-8") as f:
                if self.path.suffix in (".yaml", ".yml"):
                    return yaml.safe_load(f) or {}
                return json.load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise DeclarationError(f"Cannot parse stack file {self.path}: {e}") from e


class StaticStackLoader:
    """In-memory stack loader for tests."""

    def __init__(self, stack: StackDefinition | dict[str, Any]):
        self.stack = (
            stack if isinstance(stack, StackDefinition) else StackDefinition.model_validate(stack)
        )

    async def load(self) -> StackDefinition:
        return self.stack

    async def load_resources(self) -> list[Resource]:
        return declare_resources(self.stack)
