"""
Secret binding for compute resources.
"""

from .binding import MissingPrincipal, SecretBinder

__all__ = ["MissingPrincipal", "SecretBinder"]
