"""
Resource kind variants.

Every kind implements the same capability set (validate, diff, create,
update, destroy, outputs). Kinds are a closed set: KIND_SPECS maps each
ResourceKind to its KindSpec and dispatch is by kind tag.

Outputs come in two groups:
- early outputs, derivable from the declaration alone (a registry's
  repository URI, a DNS record's FQDN); these resolve before the
  resource is active
- produced outputs, returned by the provider on create/update
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from converge.errors import DeclarationError

from .base import Reference, Resource, ResourceKind
from .secrets import SecretReference

if TYPE_CHECKING:
    from converge.providers.base import ResourceProvider


def normalize(value: Any) -> Any:
    """Convert an attribute value into its persisted, comparable form."""
    if isinstance(value, SecretReference):
        return value.to_dict()
    if isinstance(value, Reference):
        return value.to_dict()
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    return value


def _no_outputs(attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
    return {}


def _registry_early(attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
    repository = attributes.get("repository_name") or name
    host = attributes.get("registry_host")
    return {
        "repository_name": repository,
        "repository_uri": f"{host.rstrip('/')}/{repository}" if host else repository,
    }


def _secret_early(attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
    store = attributes.get("store", "default")
    identifier = attributes.get("identifier") or name
    return {"locator": f"{store}/{identifier}"}


def _certificate_early(attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
    domain = attributes.get("domain_name")
    return {"domain_name": domain} if domain else {}


def dns_fqdn(record_name: str | None, zone_name: str) -> str:
    """
    Join a record name and zone following DNS record rules.

    An empty name or "@" is the zone apex; trailing dots are dropped.
    """
    zone = zone_name.rstrip(".")
    if not record_name or record_name == "@":
        return zone
    record = record_name.rstrip(".")
    if record == zone or record.endswith(f".{zone}"):
        return record
    return f"{record}.{zone}"


def _dns_early(attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
    zone = attributes.get("zone_name")
    if not isinstance(zone, str):
        return {}
    return {"fqdn": dns_fqdn(attributes.get("record_name"), zone)}


def _dns_derive(attributes: Mapping[str, Any], produced: Mapping[str, Any]) -> dict[str, Any]:
    outputs = dict(produced)
    if "target" in attributes:
        outputs["alias_target"] = attributes["target"]
    return outputs


def _passthrough(attributes: Mapping[str, Any], produced: Mapping[str, Any]) -> dict[str, Any]:
    return dict(produced)


@dataclass(frozen=True)
class KindSpec:
    """Capabilities of one resource kind."""

    kind: ResourceKind
    required: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    produced_outputs: frozenset[str] = frozenset()
    exported_outputs: tuple[str, ...] = ()
    artifact_attribute: str | None = None
    early: Callable[[Mapping[str, Any], str], dict[str, Any]] = _no_outputs
    derive: Callable[[Mapping[str, Any], Mapping[str, Any]], dict[str, Any]] = _passthrough

    # -- declaration ---------------------------------------------------------

    def validate(self, resource: Resource) -> None:
        missing = [key for key in self.required if key not in resource.attributes]
        if missing:
            raise DeclarationError(
                f"Resource '{resource.name}' ({self.kind.value}) is missing "
                f"required attributes: {', '.join(missing)}"
            )

    def with_defaults(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        merged = dict(self.defaults)
        merged.update(attributes)
        return merged

    # -- outputs -------------------------------------------------------------

    def _early_from(self, attributes: Mapping[str, Any], name: str) -> dict[str, Any]:
        plain = {
            k: v for k, v in self.with_defaults(attributes).items()
            if not isinstance(v, (Reference, SecretReference))
        }
        return self.early(plain, name)

    def early_outputs(self, resource: Resource) -> dict[str, Any]:
        """Outputs available from the declaration alone (plain values only)."""
        return self._early_from(resource.attributes, resource.name)

    def promises(self, resource: Resource, output: str) -> bool:
        """Whether a create/update of this resource will make the output available."""
        return output in self.produced_outputs or output in self.early_outputs(resource)

    def outputs(
        self,
        name: str,
        attributes: Mapping[str, Any],
        produced: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Early outputs merged with what the provider returned."""
        outputs = self._early_from(attributes, name)
        outputs.update(self.derive(attributes, produced))
        return outputs

    # -- diff ----------------------------------------------------------------

    def diff(self, desired: Mapping[str, Any], observed: Mapping[str, Any]) -> list[str]:
        """Names of attributes whose persisted form differs."""
        changed = []
        for key in sorted(set(desired) | set(observed)):
            if normalize(desired.get(key)) != normalize(observed.get(key)):
                changed.append(key)
        return changed

    # -- provider calls ------------------------------------------------------

    async def create(
        self,
        provider: ResourceProvider,
        resource: Resource,
        attributes: Mapping[str, Any],
    ) -> dict[str, Any]:
        produced = await provider.create(
            resource.identifier, self.kind, normalize(dict(attributes))
        )
        return self.outputs(resource.name, attributes, produced or {})

    async def update(
        self,
        provider: ResourceProvider,
        resource: Resource,
        attributes: Mapping[str, Any],
    ) -> dict[str, Any]:
        produced = await provider.update(
            resource.identifier, self.kind, normalize(dict(attributes))
        )
        return self.outputs(resource.name, attributes, produced or {})

    async def destroy(self, provider: ResourceProvider, identifier: str) -> None:
        await provider.destroy(identifier, self.kind)


KIND_SPECS: dict[ResourceKind, KindSpec] = {
    ResourceKind.REGISTRY: KindSpec(
        kind=ResourceKind.REGISTRY,
        defaults={"image_tag_mutability": "MUTABLE", "scan_on_push": True},
        produced_outputs=frozenset({"repository_arn"}),
        exported_outputs=("repository_uri",),
        early=_registry_early,
    ),
    ResourceKind.SECRET: KindSpec(
        kind=ResourceKind.SECRET,
        required=("store",),
        produced_outputs=frozenset({"arn"}),
        early=_secret_early,
    ),
    ResourceKind.CERTIFICATE: KindSpec(
        kind=ResourceKind.CERTIFICATE,
        required=("domain_name",),
        defaults={"validation": "dns"},
        produced_outputs=frozenset({"arn", "status"}),
        early=_certificate_early,
    ),
    ResourceKind.COMPUTE_SERVICE: KindSpec(
        kind=ResourceKind.COMPUTE_SERVICE,
        required=("image",),
        defaults={"image_tag": "production", "port": 8080, "environment": {}},
        produced_outputs=frozenset({"endpoint", "service_arn", "execution_role", "image_digest"}),
        exported_outputs=("endpoint",),
        artifact_attribute="image",
    ),
    ResourceKind.EDGE_DISTRIBUTION: KindSpec(
        kind=ResourceKind.EDGE_DISTRIBUTION,
        required=("origin",),
        defaults={"price_class": "PriceClass_100", "aliases": []},
        produced_outputs=frozenset({"domain_name", "distribution_id"}),
        exported_outputs=("domain_name",),
    ),
    ResourceKind.DNS_RECORD: KindSpec(
        kind=ResourceKind.DNS_RECORD,
        required=("zone_name", "target"),
        defaults={"record_type": "A", "alias": True},
        produced_outputs=frozenset({"alias_target", "change_id"}),
        exported_outputs=("fqdn",),
        early=_dns_early,
        derive=_dns_derive,
    ),
    ResourceKind.PIPELINE: KindSpec(
        kind=ResourceKind.PIPELINE,
        defaults={"branch": "main"},
        produced_outputs=frozenset({"pipeline_arn"}),
    ),
}


def spec_for(kind: ResourceKind) -> KindSpec:
    return KIND_SPECS[kind]


__all__ = ["KIND_SPECS", "KindSpec", "dns_fqdn", "normalize", "spec_for"]
