"""
Configuration Schemas for converge.

Pydantic models for the declared stack file and for service settings.

Stack files use two markers inside attribute values:

    {"$ref": "name.output"}                      reference to another resource
    {"$ref": "name.output", "bootstrap": true}   bootstrap edge
    {"$secret": {"store": "...", "identifier": "..."}}   secret locator

Security:
    Tokens use SecretStr to prevent accidental logging.
    Access the value with `.get_secret_value()`.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from converge.resources import ResourceKind

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class StackOptions(BaseModel):
    """
    Cross-cutting options applied to the declared resources.

    - domain_name: edge alias, certificate binding and certificate domain
    - price_class / web_acl_reference: edge settings, opaque to converge
    - extra_runtime_environment_variables: merged into every compute
      resource's environment, declared keys win
    """

    domain_name: str | None = Field(None, description="Public domain served by the edge")
    price_class: str | None = Field(None, description="Edge price class")
    web_acl_reference: str | None = Field(None, description="Opaque WAF policy reference")
    extra_runtime_environment_variables: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class ResourceDeclaration(BaseModel):
    """One resource in a stack file."""

    name: str = Field(..., description="Unique resource name (no dots)")
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not NAME_PATTERN.match(value):
            raise ValueError(f"invalid resource name {value!r}")
        return value


class ReleaseBinding(BaseModel):
    """Release trigger for a compute resource."""

    resource: str = Field(..., description="Compute resource to redeploy")
    tag: str | None = Field(None, description="Release tag, defaults to the resource's image_tag")


class StackDefinition(BaseModel):
    """A complete stack file."""

    environment: str = Field("default", description="Environment the observed state belongs to")
    options: StackOptions = Field(default_factory=StackOptions)
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    releases: list[ReleaseBinding] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @field_validator("resources")
    @classmethod
    def _unique_names(cls, value: list[ResourceDeclaration]) -> list[ResourceDeclaration]:
        seen: set[str] = set()
        for declaration in value:
            if declaration.name in seen:
                raise ValueError(f"resource {declaration.name!r} is declared twice")
            seen.add(declaration.name)
        return value


class AppSettings(BaseModel):
    """
    Service settings.

    Filled from CONVERGE_* environment variables by get_settings().
    """

    # Service identity
    service_name: str = "converge"
    environment: str = "development"
    debug: bool = False

    # Declared configuration and state
    stack_file: str = Field("stack.yaml", description="Stack definition (YAML or JSON)")
    state_backend: str = Field("file", description="'file', 'redis' or 'memory'")
    state_dir: str = Field(".converge", description="Directory for file state")
    redis_url: str = Field("redis://localhost:6379", description="Redis URL for redis state")

    # Collaborators; an empty URL selects the in-memory implementation
    control_plane_url: str = ""
    control_plane_token: SecretStr = Field(default=SecretStr(""))
    registry_url: str = ""
    registry_token: SecretStr = Field(default=SecretStr(""))
    http_timeout: float = Field(30.0, gt=0)

    # Engine
    max_parallel: int = Field(4, ge=1)
    max_replan_passes: int = Field(1, ge=0)

    # Release trigger
    release_poll_interval: float = Field(0.0, ge=0, description="0 disables polling")
    webhook_token: SecretStr = Field(default=SecretStr(""))

    model_config = ConfigDict(extra="ignore")
