"""Reads ``modvault.toml`` into a ``Manifest``.

Manifest layout::

    [package]
    name = "my-app"
    version = "0.1.0"

    [dependencies]
    "dep-x" = ">=1.0, <2.0"
    "acme/codec" = "^2.1"

    [abi]
    kind = "wasi"
    interface = "acme-codec"

    [abi.exports]
    encode = "(i32, i32) -> i32"

Every problem is reported as ``ManifestInvalid`` with the offending path.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from modvault.config import MANIFEST_FILE_NAME
from modvault.errors import ManifestInvalid
from modvault.models.manifest import Manifest

_KNOWN_SECTIONS = {"package", "dependencies", "abi"}


def parse_manifest(text: str, source: str = "<string>") -> Manifest:
    """Parse manifest TOML text."""
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestInvalid(f"{source}: not valid TOML: {exc}", source=source) from exc
    return manifest_from_dict(raw, source=source)


def manifest_from_dict(raw: dict[str, Any], source: str = "<dict>") -> Manifest:
    """Validate an already-decoded manifest document."""
    unknown = sorted(set(raw) - _KNOWN_SECTIONS)
    if unknown:
        raise ManifestInvalid(
            f"{source}: unknown section(s): {', '.join(unknown)}",
            source=source,
            sections=unknown,
        )

    dependencies = raw.get("dependencies", {})
    if not isinstance(dependencies, dict):
        raise ManifestInvalid(f"{source}: [dependencies] must be a table", source=source)
    for name, expression in dependencies.items():
        if not isinstance(expression, str):
            raise ManifestInvalid(
                f"{source}: constraint for {name!r} must be a string",
                source=source,
                package=name,
            )

    try:
        return Manifest.model_validate(
            {
                "package": raw.get("package"),
                "dependencies": dependencies,
                "abi": raw.get("abi"),
            }
        )
    except ValidationError as exc:
        raise ManifestInvalid(f"{source}: {exc}", source=source) from exc


def load_manifest(path: Path) -> Manifest:
    """Load a manifest file, or ``modvault.toml`` inside a directory."""
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_FILE_NAME
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestInvalid(
            f"Could not read manifest {path}: {exc}", source=str(path)
        ) from exc
    return parse_manifest(text, source=str(path))
