"""Adversarial tests — a corrupted local store index.

These tests verify that:
1. A garbage SQLite file surfaces as StorageCorrupted, never as a crash
2. ``rebuild()`` recovers cache entries and installed records
3. Cache blobs that rotted on disk are evicted during the rebuild
4. An index that cannot be opened is StorageCorrupted, and a held write
   lock is StorageBusy, never a raw sqlite3 error
"""

from __future__ import annotations

import sqlite3

import pytest

from modvault.errors import InstallError, StorageBusy, StorageCorrupted
from modvault.models.manifest import Manifest
from modvault.models.package import PackageId
from modvault.models.reports import NodeStatus


@pytest.fixture
def installed(vault, registry):
    registry.publish("dep-x", "1.0.0")
    registry.publish("dep-y", "2.0.0")
    return vault.install(Manifest(dependencies={"dep-x": "*", "dep-y": "*"}))


class TestCorruptIndex:
    def test_garbage_database_raises(self, vault, store, installed):
        """Overwrite the index with junk; every query reports StorageCorrupted."""
        store.db_path.write_bytes(b"\x00garbage" * 512)
        with pytest.raises(StorageCorrupted) as exc_info:
            vault.lookup_installed("dep-x")
        assert exc_info.value.context["path"] == str(store.db_path)

    def test_install_surfaces_corruption(self, vault, store, installed):
        store.db_path.write_bytes(b"\x00garbage" * 512)
        with pytest.raises(StorageCorrupted):
            store.cache_entries()

    def test_rebuild_restores_index(self, vault, registry, store, installed):
        """The cache directory plus the lockfile are enough to recreate the index."""
        store.db_path.write_bytes(b"\x00garbage" * 512)
        assert store.rebuild() == 2
        assert vault.lookup_installed("dep-x") == PackageId(name="dep-x", version="1.0.0")
        assert vault.lookup_installed("dep-y") == PackageId(name="dep-y", version="2.0.0")
        assert store.db_path.with_name(store.db_path.name + ".corrupt").exists()

        fetches = registry.total_fetches()
        report = vault.install(Manifest(dependencies={"dep-x": "*", "dep-y": "*"}))
        assert {o.status for o in report.outcomes} == {NodeStatus.CACHED}
        assert registry.total_fetches() == fetches

    def test_rebuild_evicts_rotten_blobs(self, vault, store, installed):
        rotten = installed.outcome_for("dep-x").content_hash
        store.cache.archive_path(rotten).write_bytes(b"bit rot")
        store.db_path.write_bytes(b"\x00garbage" * 512)

        assert store.rebuild() == 1
        assert not store.cache.exists(rotten)
        assert vault.lookup_installed("dep-x") is None
        assert vault.lookup_installed("dep-y") is not None


class TestUnopenableIndex:
    def test_directory_in_place_of_database(self, store):
        store.db_path.mkdir()
        with pytest.raises(StorageCorrupted) as exc_info:
            store.lookup_installed("dep-x")
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_install_reports_node_failure(self, vault, registry, store):
        """Every node fails with a storage error instead of aborting the pool."""
        registry.publish("dep-x", "1.0.0")
        store.db_path.mkdir()
        with pytest.raises(InstallError) as exc_info:
            vault.install(Manifest(dependencies={"dep-x": "*"}))
        assert exc_info.value.errors["dep-x"].code == "storage_corrupted"
        assert registry.total_fetches() == 0

    def test_rebuild_recovers_from_directory(self, vault, store, installed):
        store.db_path.rename(store.db_path.with_name("moved.sqlite"))
        store.db_path.mkdir()
        assert store.rebuild() == 2
        assert vault.lookup_installed("dep-x") is not None


class TestLockedIndex:
    def test_held_write_lock_is_storage_busy(self, store, installed):
        store.busy_timeout_seconds = 0.05
        blocker = sqlite3.connect(str(store.db_path), isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with pytest.raises(StorageBusy) as exc_info:
                store.evict(installed.outcome_for("dep-x").content_hash)
            assert exc_info.value.code == "storage_busy"
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
        assert store.lookup_installed("dep-x") is not None
