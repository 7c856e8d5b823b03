"""Tests for reading modvault.toml manifests."""

from __future__ import annotations

from pathlib import Path

import pytest

from modvault.core.manifest_loader import load_manifest, manifest_from_dict, parse_manifest
from modvault.errors import ManifestInvalid

FULL_MANIFEST = """
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
"""


class TestParseManifest:
    def test_full_manifest(self):
        manifest = parse_manifest(FULL_MANIFEST)
        assert str(manifest.package) == "my-app@0.1.0"
        assert manifest.dependencies == {"acme/codec": "^2.1", "dep-x": ">=1.0, <2.0"}
        assert manifest.abi.interface == "acme-codec"
        assert manifest.abi.exports == {"encode": "(i32, i32) -> i32"}

    def test_dependencies_only(self):
        manifest = parse_manifest('[dependencies]\n"a" = "*"\n')
        assert manifest.package is None
        assert manifest.constraints()["a"].allows("9.9.9")

    def test_empty_document(self):
        assert parse_manifest("").dependencies == {}

    def test_invalid_toml(self):
        with pytest.raises(ManifestInvalid, match="not valid TOML"):
            parse_manifest("[dependencies\n")

    def test_unknown_section(self):
        with pytest.raises(ManifestInvalid, match="unknown section"):
            parse_manifest("[scripts]\nbuild = 'x'\n")

    def test_non_string_constraint(self):
        with pytest.raises(ManifestInvalid, match="must be a string"):
            parse_manifest('[dependencies]\n"a" = 1\n')

    def test_bad_constraint(self):
        with pytest.raises(ManifestInvalid):
            parse_manifest('[dependencies]\n"a" = ">=banana"\n')

    def test_bad_package_name(self):
        with pytest.raises(ManifestInvalid):
            manifest_from_dict({"dependencies": {"Not Valid": "*"}})

    def test_dependencies_must_be_table(self):
        with pytest.raises(ManifestInvalid, match="must be a table"):
            manifest_from_dict({"dependencies": ["a"]})

    def test_error_carries_source(self):
        with pytest.raises(ManifestInvalid) as exc_info:
            parse_manifest("[dependencies\n", source="proj/modvault.toml")
        assert exc_info.value.context["source"] == "proj/modvault.toml"
        assert exc_info.value.code == "manifest_invalid"


class TestLoadManifest:
    def test_load_from_directory(self, tmp_path: Path):
        (tmp_path / "modvault.toml").write_text(FULL_MANIFEST, encoding="utf-8")
        assert load_manifest(tmp_path).package.name == "my-app"

    def test_load_from_file(self, tmp_path: Path):
        path = tmp_path / "other.toml"
        path.write_text(FULL_MANIFEST, encoding="utf-8")
        assert load_manifest(path).package.name == "my-app"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ManifestInvalid, match="Could not read manifest"):
            load_manifest(tmp_path)
