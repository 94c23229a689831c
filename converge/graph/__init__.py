"""
Dependency graph resolution.
"""

from .resolver import GraphResolver, ResourceGraph

__all__ = ["GraphResolver", "ResourceGraph"]
