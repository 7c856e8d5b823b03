"""Adversarial tests — concurrent installs sharing one store.

These tests verify that:
1. Two installs of the same graph download each archive exactly once
2. Packages with byte-identical archives share one download and cache entry
3. A failed shared download fails every waiter with the same error
"""

from __future__ import annotations

import threading
from collections import Counter

import pytest

from modvault.core.installer import Installer
from modvault.errors import InstallError
from modvault.models.manifest import Manifest
from modvault.models.reports import NodeStatus


def _run_concurrently(*calls):
    """Start every call at once; return (results, errors) in call order."""
    barrier = threading.Barrier(len(calls))
    results: list = [None] * len(calls)
    errors: list = [None] * len(calls)

    def runner(i, fn):
        barrier.wait()
        try:
            results[i] = fn()
        except Exception as exc:  # collected for assertions
            errors[i] = exc

    threads = [threading.Thread(target=runner, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)
    return results, errors


class TestSharedDownloads:
    def test_two_installs_fetch_once(self, vault, registry, store):
        """Both callers get the package; the registry serves each archive once."""
        registry.publish("dep-x", "1.0.0")
        registry.publish("dep-y", "1.0.0")
        registry.fetch_delay = 0.2
        manifest = Manifest(dependencies={"dep-x": "*", "dep-y": "*"})

        results, errors = _run_concurrently(
            lambda: vault.install(manifest), lambda: vault.install(manifest)
        )

        assert errors == [None, None]
        assert registry.fetches == Counter({"dep-x@1.0.0": 1, "dep-y@1.0.0": 1})
        for name in ("dep-x", "dep-y"):
            statuses = [r.outcome_for(name).status for r in results]
            assert statuses.count(NodeStatus.FETCHED) == 1
            assert set(statuses) <= {NodeStatus.FETCHED, NodeStatus.SHARED, NodeStatus.CACHED}
        assert [str(r.package_id) for r in store.installed_packages()] == [
            "dep-x@1.0.0", "dep-y@1.0.0",
        ]
        assert len(store.cache_entries()) == 2

    def test_identical_archives_share_one_entry(self, vault, registry, store, tar_gz):
        payload = tar_gz({"module.wasm": b"same bytes"})
        registry.publish("twin-a", "1.0.0", payload=payload)
        registry.publish("twin-b", "3.0.0", payload=payload)
        registry.fetch_delay = 0.1

        report = vault.install(Manifest(dependencies={"twin-a": "*", "twin-b": "*"}))

        assert registry.total_fetches() == 1
        assert len(store.cache_entries()) == 1
        statuses = sorted(o.status.value for o in report.outcomes)
        assert statuses in (["fetched", "shared"], ["cached", "fetched"])
        a = report.outcome_for("twin-a").install_path
        b = report.outcome_for("twin-b").install_path
        assert (a / "module.wasm").read_bytes() == (b / "module.wasm").read_bytes()

    def test_failed_download_fails_every_waiter(self, vault, registry, store):
        registry.publish("dep-x", "1.0.0")
        registry.tampered.add("dep-x@1.0.0")
        registry.fetch_delay = 0.2
        manifest = Manifest(dependencies={"dep-x": "*"})

        _, errors = _run_concurrently(
            lambda: vault.install(manifest), lambda: vault.install(manifest)
        )

        assert all(isinstance(e, InstallError) for e in errors)
        assert {e.errors["dep-x"].code for e in errors} == {"hash_mismatch"}
        assert store.lookup_installed("dep-x") is None


def test_waiter_times_out_when_owner_stalls(config, store, registry):
    """A waiter gives up after ``inflight_wait_seconds`` instead of hanging."""
    registry.publish("dep-x", "1.0.0")
    meta = registry.list_versions("dep-x").get("1.0.0")
    store.claim_fetch(meta.content_hash)  # owner that never finishes

    impatient = config.model_copy(update={"inflight_wait_seconds": 0.05})
    with pytest.raises(InstallError) as exc_info:
        Installer(impatient, store, registry).install(Manifest(dependencies={"dep-x": "*"}))
    assert exc_info.value.errors["dep-x"].code == "registry_unavailable"
    assert registry.total_fetches() == 0
