"""Lockfile model and its byte-stable serialization.

The lockfile is canonical JSON: sorted keys, fixed indentation, trailing
newline and no timestamps.  Serializing an unchanged graph therefore yields
identical bytes on every run.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from modvault.models.graph import DependencyEdge, DependencyGraph, ResolvedNode
from modvault.models.package import AbiDescriptor, PackageId
from modvault.models.registry import (
    ArchiveFormat,
    SignatureStatus,
    TarGzFormat,
    VersionMetadata,
)

LOCKFILE_FORMAT = "modvault-lock"
LOCKFILE_VERSION = 1


class LockfileInvalid(ValueError):
    """Raised when lockfile bytes cannot be parsed."""


class LockedPackage(BaseModel):
    """One resolved package as recorded in the lockfile."""

    model_config = ConfigDict(frozen=True)

    version: str
    content_hash: str
    signature_status: SignatureStatus
    signature: str | None = None
    download_url: str = ""
    format: ArchiveFormat = Field(default_factory=TarGzFormat)
    dependencies: dict[str, str] = Field(default_factory=dict)  # name -> exact version
    constraints: dict[str, str] = Field(default_factory=dict)  # name -> declared range
    abi: AbiDescriptor | None = None


class Lockfile(BaseModel):
    """Serialized snapshot of a ``DependencyGraph``."""

    model_config = ConfigDict(frozen=True)

    format: str = LOCKFILE_FORMAT
    lockfile_version: int = LOCKFILE_VERSION
    manifest_hash: str = ""
    root: PackageId | None = None
    root_dependencies: dict[str, str] = Field(default_factory=dict)  # name -> declared range
    packages: dict[str, LockedPackage] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Graph conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_graph(
        cls,
        graph: DependencyGraph,
        manifest_hash: str,
        statuses: dict[str, SignatureStatus] | None = None,
    ) -> Lockfile:
        """Snapshot *graph*.

        ``statuses`` overrides the per-package signature status (the
        installer passes what verification established); otherwise the
        status is derived from the registry metadata.
        """
        statuses = statuses or {}
        packages: dict[str, LockedPackage] = {}
        for name, node in graph.nodes.items():
            meta = node.metadata
            deps: dict[str, str] = {}
            constraints: dict[str, str] = {}
            for edge in graph.edges:
                if edge.parent is not None and edge.parent.name == name:
                    deps[edge.child.name] = edge.child.version
                    constraints[edge.child.name] = edge.constraint
            packages[name] = LockedPackage(
                version=node.package_id.version,
                content_hash=meta.content_hash,
                signature_status=statuses.get(name, meta.signature_status),
                signature=meta.signature,
                download_url=meta.download_url,
                format=meta.format,
                dependencies=dict(sorted(deps.items())),
                constraints=dict(sorted(constraints.items())),
                abi=meta.abi,
            )
        root_deps = {
            e.child.name: e.constraint for e in graph.edges if e.parent is None
        }
        return cls(
            manifest_hash=manifest_hash,
            root=graph.root,
            root_dependencies=dict(sorted(root_deps.items())),
            packages=dict(sorted(packages.items())),
        )

    def to_graph(self) -> DependencyGraph:
        """Rebuild the ``DependencyGraph`` this lockfile was taken from."""
        nodes: dict[str, ResolvedNode] = {}
        for name, locked in self.packages.items():
            nodes[name] = ResolvedNode(
                package_id=PackageId(name=name, version=locked.version),
                metadata=VersionMetadata(
                    version=locked.version,
                    download_url=locked.download_url,
                    content_hash=locked.content_hash,
                    signature=locked.signature,
                    format=locked.format,
                    abi=locked.abi,
                    dependencies=dict(locked.constraints),
                ),
            )
        edges: list[DependencyEdge] = []
        for name, constraint in self.root_dependencies.items():
            edges.append(DependencyEdge(
                parent=None, child=nodes[name].package_id, constraint=constraint,
            ))
        for name, locked in self.packages.items():
            for dep_name, dep_version in locked.dependencies.items():
                edges.append(DependencyEdge(
                    parent=nodes[name].package_id,
                    child=PackageId(name=dep_name, version=dep_version),
                    constraint=locked.constraints.get(dep_name, dep_version),
                ))
        return DependencyGraph(root=self.root, nodes=nodes, edges=edges)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        payload = self.model_dump(mode="json")
        text = json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=True)
        return (text + "\n").encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> Lockfile:
        try:
            raw: Any = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LockfileInvalid(f"Lockfile is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict) or raw.get("format") != LOCKFILE_FORMAT:
            raise LockfileInvalid("Not a modvault lockfile")
        if raw.get("lockfile_version") != LOCKFILE_VERSION:
            raise LockfileInvalid(
                f"Unsupported lockfile version {raw.get('lockfile_version')!r}"
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise LockfileInvalid(f"Lockfile failed validation: {exc}") from exc
