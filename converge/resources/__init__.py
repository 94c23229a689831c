"""
Resource model: kinds, lifecycle, references and secret locators.
"""

from .base import (
    TRANSITIONS,
    EdgeKind,
    LifecycleState,
    Reference,
    Resource,
    ResourceKind,
    can_transition,
    iter_references,
)
from .kinds import KIND_SPECS, KindSpec, dns_fqdn, normalize, spec_for
from .secrets import SecretReference, iter_secret_references

__all__ = [
    "KIND_SPECS",
    "TRANSITIONS",
    "EdgeKind",
    "KindSpec",
    "LifecycleState",
    "Reference",
    "Resource",
    "ResourceKind",
    "SecretReference",
    "can_transition",
    "dns_fqdn",
    "iter_references",
    "iter_secret_references",
    "normalize",
    "spec_for",
]
