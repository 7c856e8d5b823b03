"""ABI descriptor merging.

Packages that expose the same interface name must agree on its shape: the
ABI kind and the signature of every symbol both of them export.  Each
disagreement becomes one ``AbiDiagnostic``.  Diagnostics are reported, not
raised, unless strict mode is on.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from modvault.errors import AbiIncompatible
from modvault.models.package import AbiDescriptor
from modvault.models.reports import AbiDiagnostic

logger = logging.getLogger(__name__)

KIND_SYMBOL = "<kind>"


def merge_abi(descriptors: dict[str, AbiDescriptor | None]) -> list[AbiDiagnostic]:
    """Compare descriptors keyed by package label; return the conflicts.

    Descriptors without an ``interface`` name never conflict.  The result is
    sorted by interface, then symbol.
    """
    by_interface: dict[str, dict[str, AbiDescriptor]] = defaultdict(dict)
    for label, descriptor in descriptors.items():
        if descriptor is not None and descriptor.interface:
            by_interface[descriptor.interface][label] = descriptor

    diagnostics: list[AbiDiagnostic] = []
    for interface in sorted(by_interface):
        members = by_interface[interface]
        if len(members) < 2:
            continue
        kinds = {label: d.kind for label, d in members.items()}
        if len(set(kinds.values())) > 1:
            diagnostics.append(
                AbiDiagnostic(interface=interface, symbol=KIND_SYMBOL, shapes=kinds)
            )
        symbols = sorted({s for d in members.values() for s in d.exports})
        for symbol in symbols:
            shapes = {
                label: d.exports[symbol]
                for label, d in members.items() if symbol in d.exports
            }
            if len(set(shapes.values())) > 1:
                diagnostics.append(
                    AbiDiagnostic(interface=interface, symbol=symbol, shapes=shapes)
                )

    for diagnostic in diagnostics:
        logger.warning("ABI conflict: %s", diagnostic.describe())
    return diagnostics


def enforce_abi(diagnostics: list[AbiDiagnostic], strict: bool) -> None:
    """Escalate diagnostics to ``AbiIncompatible`` in strict mode."""
    if strict and diagnostics:
        raise AbiIncompatible(
            "; ".join(d.describe() for d in diagnostics),
            diagnostics=[d.model_dump() for d in diagnostics],
        )
