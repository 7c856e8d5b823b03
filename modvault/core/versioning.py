"""Semantic-version parsing, precedence, and constraint matching.

Constraints follow npm range syntax (``^1.2``, ``~1.2.3``, ``1.x``,
``>=1.0 <2.0``, ``1.0.0 - 2.0.0``, ``||``) via ``semantic_version.NpmSpec``.
A comma is accepted as an AND separator so ``>=1.0, <2.0`` means the same
as ``>=1.0 <2.0``.  Forms NpmSpec rejects (``==1.0``, ``!=1.2.0``, ``~=1.2``)
fall back to ``semantic_version.SimpleSpec``.
"""

from __future__ import annotations

import logging
from typing import Any

import semantic_version

logger = logging.getLogger(__name__)

ANY_VERSION = "*"


def parse_version(value: str) -> semantic_version.Version:
    """Parse a strict ``major.minor.patch[-pre][+build]`` version.

    Raises ``ValueError`` if *value* is not a full semantic version.
    """
    return semantic_version.Version(value.strip())


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except ValueError:
        return False
    return True


def _identifier_key(identifier: str) -> tuple[int, int | str]:
    # Numeric identifiers sort before alphanumeric ones
    if identifier.isdigit():
        return (0, int(identifier))
    return (1, identifier)


def precedence_key(version: semantic_version.Version) -> tuple[Any, ...]:
    """Sort key implementing semver precedence.

    Pre-releases sort before the corresponding release; build metadata is
    ignored for precedence.
    """
    if version.prerelease:
        pre: tuple[Any, ...] = (0, tuple(_identifier_key(p) for p in version.prerelease))
    else:
        pre = (1, ())
    return (version.major, version.minor, version.patch, pre)


def newest_first(versions: list[str]) -> list[str]:
    """Order version strings by descending precedence.

    Versions of equal precedence (differing only in build metadata) are
    tie-broken by descending version string, so the order never depends on
    the input order.  Strings that are not semantic versions are dropped.
    """
    parsed: list[tuple[tuple[Any, ...], str]] = []
    for raw in versions:
        try:
            parsed.append((precedence_key(parse_version(raw)), raw))
        except ValueError:
            logger.debug("Ignoring non-semver version string %r", raw)
    parsed.sort(reverse=True)
    return [raw for _key, raw in parsed]


class Constraint:
    """A parsed version range expression attached to a dependency edge.

    Instances are immutable and compare equal by their normalized expression.
    """

    __slots__ = ("_expression", "_spec")

    def __init__(self, expression: str) -> None:
        normalized = " ".join(expression.replace(",", " ").split()) or ANY_VERSION
        self._expression = normalized
        self._spec = self._build_spec(expression, normalized)

    @staticmethod
    def _build_spec(
        original: str, normalized: str
    ) -> semantic_version.NpmSpec | semantic_version.SimpleSpec:
        try:
            return semantic_version.NpmSpec(normalized)
        except ValueError:
            pass
        simple = ",".join(part.strip() for part in original.split(",") if part.strip())
        try:
            return semantic_version.SimpleSpec(simple or ANY_VERSION)
        except ValueError as exc:
            raise ValueError(f"Invalid version constraint {original!r}: {exc}") from exc

    @property
    def expression(self) -> str:
        return self._expression

    def allows(self, version: str | semantic_version.Version) -> bool:
        """Return True if *version* satisfies this constraint."""
        if isinstance(version, str):
            try:
                version = parse_version(version)
            except ValueError:
                return False
        return self._spec.match(version)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Constraint):
            return NotImplemented
        return self._expression == other._expression

    def __hash__(self) -> int:
        return hash(self._expression)

    def __repr__(self) -> str:
        return f"Constraint({self._expression!r})"

    def __str__(self) -> str:
        return self._expression


def allows_all(constraints: list[Constraint], version: str) -> bool:
    """True if *version* satisfies every constraint (their intersection)."""
    return all(c.allows(version) for c in constraints)


def filter_candidates(versions: list[str], constraints: list[Constraint]) -> list[str]:
    """Return the versions satisfying every constraint, newest first."""
    return [v for v in newest_first(versions) if allows_all(constraints, v)]
