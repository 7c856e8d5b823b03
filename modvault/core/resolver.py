"""Version Resolver — backtracking search for one consistent dependency graph.

For each unresolved package name the resolver asks the registry for its
versions, keeps the ones satisfying every constraint placed on the name so
far, and tries them newest first.  Selecting a version adds its declared
dependencies as new constraints.  A conflict is either:

- an already selected version violating a newly added constraint, or
- no published version satisfying the merged constraints on a name.

On conflict the resolver backtracks to the most recent choice point and
tries the next-older candidate.  The search is driven by an explicit stack of
choice points instead of recursion; each state is an immutable snapshot, so
backtracking is just popping the stack.

Diamonds (one name constrained from sibling subtrees) resolve to the highest
version satisfying every constraint; if none exists resolution fails.  The
order in which parents were visited never decides the outcome.

Cycles are hard errors.  They are detected when a selected package declares
a dependency that already (transitively) depends on the package itself, or
when any package declares the root project as a dependency.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from modvault.core.context import RunContext
from modvault.core.versioning import Constraint, filter_candidates
from modvault.errors import DependencyCycle, PackageNotFound, UnsatisfiableConstraint
from modvault.models.graph import DependencyEdge, DependencyGraph, ResolvedNode
from modvault.models.manifest import Manifest
from modvault.models.package import PackageId, validate_package_name
from modvault.models.registry import VersionMetadata

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Search state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Requirement:
    """``parent`` requires ``name`` within ``constraint``; parent None is the root."""

    parent: PackageId | None
    parent_label: str
    name: str
    constraint: Constraint


@dataclass(frozen=True)
class _State:
    selected: dict[str, VersionMetadata] = field(default_factory=dict)
    requirements: tuple[_Requirement, ...] = ()
    pending: tuple[str, ...] = ()

    def constraints_on(self, name: str) -> list[Constraint]:
        return [r.constraint for r in self.requirements if r.name == name]

    def labelled_constraints(self, name: str) -> list[tuple[str, str]]:
        return [
            (r.parent_label, r.constraint.expression)
            for r in self.requirements if r.name == name
        ]


@dataclass(frozen=True)
class _Conflict:
    package: str
    constraints: list[tuple[str, str]]
    available: list[str]
    reason: str = ""

    def to_error(self) -> UnsatisfiableConstraint:
        return UnsatisfiableConstraint(
            self.package, self.constraints, self.available, reason=self.reason
        )


class _ConflictFound(Exception):
    def __init__(self, conflict: _Conflict) -> None:
        super().__init__(conflict.package)
        self.conflict = conflict


@dataclass
class _ChoicePoint:
    base: _State  # state with ``name`` already popped from pending
    name: str
    candidates: Iterator[str]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class Resolver:
    """Computes a ``DependencyGraph`` for a manifest against one registry view.

    Parameters
    ----------
    context:
        The run context; its metadata cache means each package name is
        queried at most once however often the search backtracks.
    """

    def __init__(self, context: RunContext) -> None:
        self._context = context
        self._root_name: str | None = None

    def resolve(self, manifest: Manifest) -> DependencyGraph:
        """Resolve *manifest*.

        Raises
        ------
        UnsatisfiableConstraint
            No assignment of versions satisfies every constraint.
        DependencyCycle
            The selected packages depend on each other in a loop.
        RegistryUnavailable
            Propagated unchanged from the registry client.
        """
        root_label = manifest.label
        self._root_name = manifest.package.name if manifest.package else None
        if self._root_name in manifest.dependencies:
            raise DependencyCycle([self._root_name, self._root_name])
        requirements = tuple(
            _Requirement(None, root_label, name, Constraint(expr))
            for name, expr in sorted(manifest.dependencies.items())
        )
        state = _State(requirements=requirements, pending=tuple(sorted(manifest.dependencies)))

        stack: list[_ChoicePoint] = []
        last_conflict: _Conflict | None = None
        steps = 0

        while state.pending:
            self._context.check_cancelled("resolution")
            name, rest = state.pending[0], state.pending[1:]
            base = _State(selected=state.selected, requirements=state.requirements, pending=rest)
            candidates = self._candidates(name, base)
            if not candidates:
                last_conflict = self._no_candidates(name, base)
            else:
                stack.append(_ChoicePoint(base, name, iter(candidates)))

            next_state, last_conflict = self._advance(stack, last_conflict)
            state = next_state
            steps += 1

        graph = self._build_graph(manifest, state)
        graph.topological_order()
        logger.info(
            "Resolved %d package(s) for %s in %d step(s)", len(graph), root_label, steps
        )
        return graph

    # ------------------------------------------------------------------
    # Search steps
    # ------------------------------------------------------------------

    def _advance(
        self, stack: list[_ChoicePoint], last_conflict: _Conflict | None
    ) -> tuple[_State, _Conflict | None]:
        """Take the next viable candidate, backtracking as needed."""
        while stack:
            point = stack[-1]
            for version in point.candidates:
                try:
                    return self._select(point.base, point.name, version), last_conflict
                except _ConflictFound as exc:
                    last_conflict = exc.conflict
                    logger.debug(
                        "Rejecting %s@%s: conflict on %s",
                        point.name, version, exc.conflict.package,
                    )
            stack.pop()
            if stack:
                logger.debug("Backtracking past %s", point.name)

        if last_conflict is None:
            raise UnsatisfiableConstraint("<root>", [], [], reason="no candidates")
        raise last_conflict.to_error()

    def _select(self, base: _State, name: str, version: str) -> _State:
        """Return the state after choosing ``name@version``.

        Raises ``_ConflictFound`` if the choice is immediately inconsistent.
        """
        meta = self._context.list_versions(name).versions[version]
        package_id = PackageId(name=name, version=version)
        selected = {**base.selected, name: meta}
        requirements = list(base.requirements)
        pending = list(base.pending)

        for dep_name, expr in sorted(meta.dependencies.items()):
            if dep_name == self._root_name:
                raise DependencyCycle(
                    [dep_name, *_path_from_root(base.requirements, name), dep_name]
                )
            cycle = self._cycle_through(selected, name, dep_name)
            if cycle:
                raise DependencyCycle(cycle)
            try:
                validate_package_name(dep_name)
                constraint = Constraint(expr)
            except ValueError as exc:
                raise _ConflictFound(_Conflict(
                    dep_name, [(str(package_id), expr)], [],
                    reason=f"invalid dependency declaration ({exc})",
                )) from exc
            requirements.append(_Requirement(package_id, str(package_id), dep_name, constraint))
            trial = _State(selected=selected, requirements=tuple(requirements))

            chosen = selected.get(dep_name)
            if chosen is not None:
                if not constraint.allows(chosen.version):
                    raise _ConflictFound(_Conflict(
                        dep_name,
                        trial.labelled_constraints(dep_name),
                        [chosen.version],
                        reason=f"{dep_name}@{chosen.version} is already selected",
                    ))
                continue
            if not self._candidates(dep_name, trial):
                raise _ConflictFound(self._no_candidates(dep_name, trial))
            if dep_name not in pending:
                pending.append(dep_name)

        return _State(
            selected=selected,
            requirements=tuple(requirements),
            pending=tuple(pending),
        )

    def _candidates(self, name: str, state: _State) -> list[str]:
        try:
            entry = self._context.list_versions(name)
        except PackageNotFound:
            return []
        candidates = filter_candidates(entry.version_strings(), state.constraints_on(name))
        logger.debug("Candidates for %s: %s", name, candidates)
        return candidates

    def _no_candidates(self, name: str, state: _State) -> _Conflict:
        try:
            available = self._context.list_versions(name).version_strings()
            reason = ""
        except PackageNotFound:
            available = []
            reason = "package not found in registry"
        return _Conflict(name, state.labelled_constraints(name), available, reason=reason)

    @staticmethod
    def _cycle_through(
        selected: dict[str, VersionMetadata], name: str, dep_name: str
    ) -> list[str]:
        """Path ``[name, dep_name, ..., name]`` if *dep_name* leads back to *name*."""
        if dep_name == name:
            return [name, name]
        if dep_name not in selected:
            return []
        path = [dep_name]
        on_path = {dep_name}
        seen: set[str] = set()

        def walk(current: str) -> bool:
            for child in sorted(selected[current].dependencies):
                if child == name:
                    path.append(child)
                    return True
                if child in selected and child not in on_path and child not in seen:
                    path.append(child)
                    on_path.add(child)
                    if walk(child):
                        return True
                    on_path.discard(path.pop())
                    seen.add(child)
            return False

        if walk(dep_name):
            return [name] + path
        return []

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    @staticmethod
    def _build_graph(manifest: Manifest, state: _State) -> DependencyGraph:
        nodes = {
            name: ResolvedNode(
                package_id=PackageId(name=name, version=meta.version), metadata=meta
            )
            for name, meta in state.selected.items()
        }
        edges = [
            DependencyEdge(
                parent=req.parent,
                child=nodes[req.name].package_id,
                constraint=req.constraint.expression,
            )
            for req in state.requirements
        ]
        return DependencyGraph(root=manifest.package, nodes=nodes, edges=edges)



def _path_from_root(requirements: tuple[_Requirement, ...], name: str) -> list[str]:
    """Names on the first requirement chain leading from the root to *name*."""
    parents: dict[str, str | None] = {}
    for req in requirements:
        parents.setdefault(req.name, req.parent.name if req.parent else None)
    path = [name]
    current = parents.get(name)
    while current is not None and current not in path:
        path.insert(0, current)
        current = parents.get(current)
    return path
