"""Package identity and ABI descriptor models."""

from __future__ import annotations

import functools
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from modvault.core.versioning import parse_version, precedence_key

# Lowercase, optionally namespaced: "name" or "namespace/name"
PACKAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*(/[a-z0-9][a-z0-9._-]*)?$")


def validate_package_name(name: str) -> str:
    if not PACKAGE_NAME_PATTERN.match(name) or ".." in name:
        raise ValueError(f"Invalid package name: {name!r}")
    return name


@functools.total_ordering
class PackageId(BaseModel):
    """(name, semantic version) pair.

    Ordered by name, then by semantic-version precedence, with the exact
    version string as a final tie-break.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_package_name(value)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        parse_version(value)
        return value

    @property
    def sort_key(self) -> tuple:
        return (self.name, precedence_key(parse_version(self.version)), self.version)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PackageId):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


class AbiDescriptor(BaseModel):
    """Opaque description of a package's exposed interface shape.

    ``kind`` names the ABI family (e.g. ``wasi``, ``emscripten``, ``none``).
    ``interface`` names the interface the package exposes, and ``exports``
    maps each exported symbol to its signature string.  Only used to detect
    two packages exposing different shapes under the same interface name.
    """

    model_config = ConfigDict(frozen=True)

    kind: str = "none"
    interface: str | None = None
    exports: dict[str, str] = Field(default_factory=dict)
