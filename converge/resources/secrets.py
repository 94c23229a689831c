"""
Secret references.

A SecretReference is an opaque locator (store + identifier). It is what
gets persisted, planned and logged; the value behind it is fetched by the
compute resource's runtime and never passes through converge.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from converge.errors import DeclarationError

SECRET_MARKER = "$secret"


@dataclass(frozen=True, slots=True)
class SecretReference:
    """Locator of a secret in an external store."""

    store: str
    identifier: str

    def __post_init__(self) -> None:
        if not self.store or not self.identifier:
            raise DeclarationError("Secret references need both a store and an identifier")

    @property
    def locator(self) -> str:
        return f"{self.store}/{self.identifier}"

    def to_dict(self) -> dict[str, Any]:
        return {SECRET_MARKER: {"store": self.store, "identifier": self.identifier}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SecretReference:
        inner = data.get(SECRET_MARKER, data)
        return cls(store=str(inner.get("store", "")), identifier=str(inner.get("identifier", "")))

    def __repr__(self) -> str:
        return f"SecretReference({self.locator})"

    # Never let a formatted reference look like anything but its locator
    __str__ = __repr__


def is_secret_marker(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {SECRET_MARKER}


def iter_secret_references(value: Any) -> Iterator[SecretReference]:
    """Yield every SecretReference nested inside an attribute value."""
    if isinstance(value, SecretReference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_secret_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_secret_references(item)
