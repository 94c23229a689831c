"""
Declared configuration: stack schemas, loaders and the standard topology.
"""

from .loader import (
    FileStackLoader,
    StaticStackLoader,
    apply_options,
    declare_resources,
    parse_value,
)
from .schemas import (
    AppSettings,
    ReleaseBinding,
    ResourceDeclaration,
    StackDefinition,
    StackOptions,
)
from .topology import standard_topology

__all__ = [
    "AppSettings",
    "FileStackLoader",
    "ReleaseBinding",
    "ResourceDeclaration",
    "StackDefinition",
    "StackOptions",
    "StaticStackLoader",
    "apply_options",
    "declare_resources",
    "parse_value",
    "standard_topology",
]
