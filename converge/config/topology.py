"""
Standard topology.

Declares the reference deployment in code: a registry, the secrets the
API reads at runtime, a TLS certificate, the compute service running the
API, an edge distribution in front of it, a DNS alias for the edge and
the build/deploy pipeline.

Edges:
    compute  -> registry.repository_uri      (image source, bootstrap-checked)
    compute  -> secret.arn                   (one per runtime secret)
    edge     -> compute.endpoint, certificate.arn
    dns      -> edge.domain_name
    pipeline -> registry.repository_uri
    pipeline -> compute                      (bootstrap: deploy target)
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from converge.resources import EdgeKind, Reference, Resource, ResourceKind, SecretReference

from .loader import apply_options
from .schemas import StackOptions


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def standard_topology(
    app: str = "app",
    *,
    zone_name: str,
    record_name: str | None = None,
    runtime_secrets: Mapping[str, SecretReference] | None = None,
    registry_host: str | None = None,
    image_tag: str = "production",
    port: int = 8080,
    source_repository: str | None = None,
    options: StackOptions | None = None,
) -> list[Resource]:
    """
    Resources of the reference topology, in declaration order.

    Args:
        app: Name prefix and registry repository name
        zone_name: DNS zone holding the public record
        record_name: Record inside the zone, defaults to the domain name
            option or the zone apex
        runtime_secrets: Environment variable name to secret locator
        options: Cross-cutting stack options

    Example:
        resources = standard_topology(
            "api",
            zone_name="example.com",
            runtime_secrets={"DATABASE_URL": SecretReference("vault", "api/database-url")},
            options=StackOptions(domain_name="api.example.com"),
        )
    """
    options = options or StackOptions()
    runtime_secrets = dict(runtime_secrets or {})

    registry_attributes: dict = {"repository_name": app}
    if registry_host:
        registry_attributes["registry_host"] = registry_host
    registry = Resource(f"{app}-registry", ResourceKind.REGISTRY, registry_attributes)

    secrets = [
        Resource(
            f"{app}-secret-{_slug(variable)}",
            ResourceKind.SECRET,
            {"store": ref.store, "identifier": ref.identifier},
        )
        for variable, ref in runtime_secrets.items()
    ]

    resources = [registry, *secrets]

    certificate = None
    if options.domain_name:
        certificate = Resource(
            f"{app}-certificate",
            ResourceKind.CERTIFICATE,
            {"domain_name": options.domain_name},
        )
        resources.append(certificate)

    compute = Resource(
        f"{app}-service",
        ResourceKind.COMPUTE_SERVICE,
        {
            "image": Reference(registry.name, "repository_uri"),
            "image_tag": image_tag,
            "port": port,
            "environment": dict(runtime_secrets),
            "secret_arns": [Reference(s.name, "arn") for s in secrets],
        },
    )
    edge = Resource(
        f"{app}-edge",
        ResourceKind.EDGE_DISTRIBUTION,
        {"origin": Reference(compute.name, "endpoint")},
    )
    dns = Resource(
        f"{app}-dns",
        ResourceKind.DNS_RECORD,
        {
            "zone_name": zone_name,
            "record_name": record_name or options.domain_name or "@",
            "target": Reference(edge.name, "domain_name"),
        },
    )
    pipeline_attributes = {
        "source": Reference(registry.name, "repository_uri"),
        "deploy_target": Reference(compute.name, edge=EdgeKind.BOOTSTRAP),
        "image_tag": image_tag,
    }
    if source_repository:
        pipeline_attributes["source_repository"] = source_repository
    pipeline = Resource(f"{app}-pipeline", ResourceKind.PIPELINE, pipeline_attributes)

    resources.extend([compute, edge, dns, pipeline])
    apply_options(resources, options)
    return resources
