"""Resolved dependency graph.

Invariants:
- exactly one version per package name
- acyclic; a cycle is a hard error, never silently broken
"""

from __future__ import annotations

from collections import deque

from pydantic import BaseModel, ConfigDict, Field, model_validator

from modvault.errors import DependencyCycle
from modvault.models.package import PackageId
from modvault.models.registry import VersionMetadata

ROOT_LABEL = "<root>"


class ResolvedNode(BaseModel):
    """A selected package version and the registry metadata it was chosen with."""

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    metadata: VersionMetadata

    @property
    def name(self) -> str:
        return self.package_id.name


class DependencyEdge(BaseModel):
    """``parent -> child``, annotated with the constraint the child satisfies.

    ``parent`` is ``None`` for edges declared by the root manifest.
    """

    model_config = ConfigDict(frozen=True)

    parent: PackageId | None = None
    child: PackageId
    constraint: str

    @property
    def parent_label(self) -> str:
        return str(self.parent) if self.parent else ROOT_LABEL


class DependencyGraph(BaseModel):
    """Nodes keyed by package name plus constraint-annotated edges.

    Nodes and edges are stored in a canonical order so two graphs built from
    the same decisions compare (and serialize) identically.
    """

    model_config = ConfigDict(frozen=True)

    root: PackageId | None = None
    nodes: dict[str, ResolvedNode] = Field(default_factory=dict)
    edges: list[DependencyEdge] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _canonical_order(cls, data: dict) -> dict:
        if isinstance(data, dict):
            nodes = data.get("nodes") or {}
            edges = data.get("edges") or []
            data = dict(data)
            data["nodes"] = dict(sorted(nodes.items()))
            data["edges"] = sorted(edges, key=_edge_key)
        return data

    @model_validator(mode="after")
    def _check_invariants(self) -> DependencyGraph:
        for name, node in self.nodes.items():
            if node.package_id.name != name:
                raise ValueError(f"Node keyed {name!r} holds {node.package_id}")
        for edge in self.edges:
            held = self.nodes.get(edge.child.name)
            if held is None or held.package_id != edge.child:
                raise ValueError(f"Edge to {edge.child} has no matching node")
        return self

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def package_ids(self) -> list[PackageId]:
        return [node.package_id for node in self.nodes.values()]

    def get(self, name: str) -> ResolvedNode | None:
        return self.nodes.get(name)

    def dependencies_of(self, name: str) -> list[PackageId]:
        """Direct children of *name* (root edges excluded)."""
        return [
            e.child for e in self.edges
            if e.parent is not None and e.parent.name == name
        ]

    def dependents_of(self, name: str) -> list[str]:
        """Labels of every parent with an edge into *name*."""
        return [e.parent_label for e in self.edges if e.child.name == name]

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_order(self) -> list[PackageId]:
        """Dependencies before dependents, ties broken by package name.

        Raises ``DependencyCycle`` if the edges contain a cycle.
        """
        children: dict[str, set[str]] = {name: set() for name in self.nodes}
        parents: dict[str, set[str]] = {name: set() for name in self.nodes}
        for edge in self.edges:
            if edge.parent is None or edge.parent.name not in self.nodes:
                continue
            children[edge.parent.name].add(edge.child.name)
            parents[edge.child.name].add(edge.parent.name)

        remaining = {name: len(deps) for name, deps in children.items()}
        ready = deque(sorted(name for name, count in remaining.items() if count == 0))
        order: list[PackageId] = []
        while ready:
            name = ready.popleft()
            order.append(self.nodes[name].package_id)
            for parent in sorted(parents[name]):
                remaining[parent] -= 1
                if remaining[parent] == 0:
                    ready.append(parent)

        if len(order) != len(self.nodes):
            raise DependencyCycle(self._find_cycle(children))
        return order

    @staticmethod
    def _find_cycle(children: dict[str, set[str]]) -> list[str]:
        """Return one cycle as ``[a, b, ..., a]``."""
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def walk(name: str) -> list[str] | None:
            visiting.append(name)
            on_path.add(name)
            for child in sorted(children[name]):
                if child in on_path:
                    return visiting[visiting.index(child):] + [child]
                if child not in done:
                    found = walk(child)
                    if found:
                        return found
            on_path.discard(name)
            visiting.pop()
            done.add(name)
            return None

        for start in sorted(children):
            if start not in done:
                found = walk(start)
                if found:
                    return found
        return []


def _edge_key(edge: DependencyEdge | dict) -> tuple:
    if isinstance(edge, dict):
        edge = DependencyEdge.model_validate(edge)
    parent = edge.parent.sort_key if edge.parent else ()
    return (edge.parent is not None, parent, edge.child.sort_key, edge.constraint)
