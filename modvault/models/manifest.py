"""Project manifest model.

Loaded once per resolution run from ``modvault.toml`` and immutable
thereafter.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from modvault.core.hasher import manifest_hash
from modvault.core.versioning import Constraint
from modvault.models.package import AbiDescriptor, PackageId, validate_package_name


class Manifest(BaseModel):
    """Declared dependencies of a project (or of a published package).

    ``package`` is optional for the root project.  ``dependencies`` maps a
    package name to a constraint expression string; the order of entries
    never influences resolution.
    """

    model_config = ConfigDict(frozen=True)

    package: PackageId | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
    abi: AbiDescriptor | None = None

    @field_validator("dependencies")
    @classmethod
    def _check_dependencies(cls, value: dict[str, str]) -> dict[str, str]:
        for name, expression in value.items():
            validate_package_name(name)
            Constraint(expression)
        return dict(sorted(value.items()))

    @property
    def label(self) -> str:
        """How the root appears in diagnostics."""
        return str(self.package) if self.package else "<root>"

    def constraints(self) -> dict[str, Constraint]:
        return {name: Constraint(expr) for name, expr in self.dependencies.items()}

    def resolution_hash(self) -> str:
        """Hash of everything in the manifest that affects resolution."""
        return manifest_hash(
            self.dependencies,
            name=self.package.name if self.package else "",
            version=self.package.version if self.package else "",
        )
