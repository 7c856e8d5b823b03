"""Tests for the Modvault facade and the functional entry points."""

from __future__ import annotations

from pathlib import Path

import pytest

import modvault
from modvault.api import Modvault
from modvault.core.registry_client import RegistryClient
from modvault.errors import ManifestInvalid, UnsatisfiableConstraint
from modvault.models.package import PackageId


class TestModvault:
    def test_reads_manifest_from_project(self, vault, registry, write_manifest):
        registry.publish("dep-x", "1.2.0")
        write_manifest({"dep-x": "^1.0"})
        report = vault.install()
        assert report.outcome_for("dep-x").package_id.version == "1.2.0"
        assert vault.lookup_installed("dep-x") == PackageId(name="dep-x", version="1.2.0")

    def test_missing_manifest(self, vault):
        with pytest.raises(ManifestInvalid):
            vault.install()

    def test_resolve_does_not_write_by_default(self, vault, registry, store, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        graph, lockfile = vault.resolve()
        assert "dep-x" in graph
        assert lockfile.packages["dep-x"].version == "1.0.0"
        assert store.read_lockfile() is None

    def test_resolve_can_write_lockfile(self, vault, registry, store, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        _, lockfile = vault.resolve(write_lockfile=True)
        assert store.read_lockfile() == lockfile

    def test_resolve_ignores_existing_lockfile(self, vault, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        vault.install()
        registry.publish("dep-x", "1.1.0")
        graph, _ = vault.resolve()
        assert graph.nodes["dep-x"].package_id.version == "1.1.0"

    def test_resolution_errors_propagate(self, vault, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": ">=2.0"})
        with pytest.raises(UnsatisfiableConstraint):
            vault.resolve()

    def test_lookup_unknown(self, vault):
        assert vault.lookup_installed("nothing") is None

    def test_default_registry_is_client(self, project_dir, config):
        with Modvault(project_dir, config) as vault:
            assert isinstance(vault.registry, RegistryClient)


class TestFunctionalEntryPoints:
    def test_install_then_lookup(self, project_dir, config, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        report = modvault.install(project_dir, config=config, registry=registry)
        assert report.ok
        assert modvault.lookup_installed("dep-x", project_dir, config=config) == PackageId(
            name="dep-x", version="1.0.0"
        )

    def test_resolve(self, project_dir, config, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        graph, _ = modvault.resolve(project_dir, config=config, registry=registry)
        assert graph.package_ids() == [PackageId(name="dep-x", version="1.0.0")]

    def test_verify_only(self, project_dir, config, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        modvault.install(project_dir, config=config, registry=registry)
        assert modvault.verify_only(project_dir, config=config, registry=registry).ok

    def test_store_lives_under_project(self, project_dir: Path, config, registry, write_manifest):
        registry.publish("dep-x", "1.0.0")
        write_manifest({"dep-x": "*"})
        modvault.install(project_dir, config=config, registry=registry)
        assert (project_dir / ".modvault" / "modvault.sqlite").exists()
        assert (project_dir / "modvault.lock").exists()
        assert (project_dir / "modvault_packages" / "dep-x@1.0.0").is_dir()


def test_version_exported():
    assert modvault.__version__ == "0.1.0"
