"""Tests for the lockfile model and its byte-stable serialization."""

from __future__ import annotations

import json

import pytest

from modvault.models.graph import DependencyEdge, DependencyGraph, ResolvedNode
from modvault.models.lockfile import Lockfile, LockfileInvalid
from modvault.models.package import AbiDescriptor, PackageId
from modvault.models.registry import SignatureStatus, VersionMetadata

HASH_A = "sha256:" + "a" * 64
HASH_B = "sha256:" + "b" * 64


def _graph() -> DependencyGraph:
    app = PackageId(name="app", version="0.1.0")
    a = PackageId(name="a", version="1.0.0")
    b = PackageId(name="b", version="1.4.0")
    nodes = {
        "a": ResolvedNode(package_id=a, metadata=VersionMetadata(
            version="1.0.0", download_url="https://r.test/a", content_hash=HASH_A,
            signature="ff" * 64, dependencies={"b": "^1.0"},
            abi=AbiDescriptor(kind="wasi", interface="codec", exports={"f": "()"}),
        )),
        "b": ResolvedNode(package_id=b, metadata=VersionMetadata(
            version="1.4.0", download_url="https://r.test/b", content_hash=HASH_B,
        )),
    }
    edges = [
        DependencyEdge(parent=a, child=b, constraint="^1.0"),
        DependencyEdge(child=a, constraint=">=1.0, <2.0"),
    ]
    return DependencyGraph(root=app, nodes=nodes, edges=edges)


class TestFromGraph:
    def test_records_versions_and_edges(self):
        lock = Lockfile.from_graph(_graph(), "sha256:" + "0" * 64)
        assert lock.root_dependencies == {"a": ">=1.0, <2.0"}
        assert lock.packages["a"].dependencies == {"b": "1.4.0"}
        assert lock.packages["a"].constraints == {"b": "^1.0"}
        assert lock.packages["a"].signature_status == SignatureStatus.SIGNED
        assert lock.packages["b"].signature_status == SignatureStatus.UNSIGNED

    def test_status_override(self):
        lock = Lockfile.from_graph(_graph(), "h", {"a": SignatureStatus.VERIFIED})
        assert lock.packages["a"].signature_status == SignatureStatus.VERIFIED

    def test_graph_round_trip(self):
        graph = _graph()
        assert Lockfile.from_graph(graph, "h").to_graph() == graph


class TestSerialization:
    def test_bytes_are_stable(self):
        first = Lockfile.from_graph(_graph(), "h").to_bytes()
        second = Lockfile.from_graph(_graph(), "h").to_bytes()
        assert first == second
        assert first.endswith(b"\n")
        assert b"installed_at" not in first and b"verified_at" not in first

    def test_keys_sorted(self):
        raw = json.loads(Lockfile.from_graph(_graph(), "h").to_bytes())
        assert list(raw) == sorted(raw)
        assert list(raw["packages"]) == ["a", "b"]

    def test_from_bytes(self):
        lock = Lockfile.from_graph(_graph(), "h")
        assert Lockfile.from_bytes(lock.to_bytes()) == lock

    @pytest.mark.parametrize(
        "data",
        [
            b"not json",
            b"[]",
            b'{"format": "something-else", "lockfile_version": 1}',
            b'{"format": "modvault-lock", "lockfile_version": 99}',
            b'{"format": "modvault-lock", "lockfile_version": 1, "packages": {"a": {}}}',
        ],
    )
    def test_invalid_bytes(self, data):
        with pytest.raises(LockfileInvalid):
            Lockfile.from_bytes(data)
