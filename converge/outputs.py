"""
Outputs surface.

Exported outputs of active resources: the edge domain name, the compute
endpoint, the DNS FQDN and the registry URI.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from converge.engine.state import ObservedState
from converge.resources import Resource, spec_for


def collect_outputs(resources: Iterable[Resource], observed: ObservedState) -> dict[str, dict[str, Any]]:
    """
    Resource name to exported outputs, for declared resources that are active.

    Example:
        collect_outputs(resources, observed)
        # {"app-edge": {"domain_name": "d123.edge.example.net"},
        #  "app-dns": {"fqdn": "api.example.com"}, ...}
    """
    collected: dict[str, dict[str, Any]] = {}
    for resource in resources:
        record = observed.get(resource.name)
        if record is None or not record.is_active:
            continue
        exported = {
            name: record.outputs[name]
            for name in spec_for(resource.kind).exported_outputs
            if name in record.outputs
        }
        if exported:
            collected[resource.name] = exported
    return collected
