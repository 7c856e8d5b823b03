"""Tests for the content-addressed archive cache."""

from __future__ import annotations

from pathlib import Path

import pytest

from modvault.core.content_store import ContentAddressedStore
from modvault.core.hasher import content_address, sha256_hex
from modvault.models.package import PackageId
from modvault.models.registry import SignatureStatus, TarGzFormat, VerifiedArchive


@pytest.fixture
def cas(tmp_path: Path) -> ContentAddressedStore:
    return ContentAddressedStore(tmp_path / "cache")


def _verified(cas: ContentAddressedStore, data: bytes, name: str = "dep-x") -> VerifiedArchive:
    incoming = cas.staging_dir / f"{name}.part"
    incoming.write_bytes(data)
    return VerifiedArchive(
        package_id=PackageId(name=name, version="1.0.0"),
        path=incoming,
        content_hash=content_address(sha256_hex(data)),
        signature_status=SignatureStatus.VERIFIED,
    )


class TestLayout:
    def test_sharded_path(self, cas):
        digest = "ab" * 32
        path = cas.archive_path(f"sha256:{digest}")
        assert path.relative_to(cas.base_path).parts == ("ab", "ab", digest, "archive")

    def test_staging_created(self, cas):
        assert cas.staging_dir.is_dir()


class TestIngest:
    def test_moves_file_into_place(self, cas):
        verified = _verified(cas, b"payload")
        target = cas.ingest(verified)
        assert target.read_bytes() == b"payload"
        assert not verified.path.exists()
        assert cas.exists(verified.content_hash)
        assert cas.verify(verified.content_hash)

    def test_duplicate_content_keeps_first_copy(self, cas):
        first = cas.ingest(_verified(cas, b"same", name="a"))
        mtime = first.stat().st_mtime_ns
        second_in = _verified(cas, b"same", name="b")
        second = cas.ingest(second_in)
        assert first == second
        assert first.stat().st_mtime_ns == mtime
        assert not second_in.path.exists()

    def test_corrupt_copy_replaced(self, cas):
        verified = _verified(cas, b"good bytes")
        target = cas.archive_path(verified.content_hash)
        target.parent.mkdir(parents=True)
        target.write_bytes(b"rotten")
        assert not cas.verify(verified.content_hash)
        cas.ingest(verified)
        assert cas.verify(verified.content_hash)


class TestUnpack:
    def test_unpacks_once(self, cas, tar_gz):
        verified = _verified(cas, tar_gz({"lib/mod.wasm": b"\x00asm"}))
        cas.ingest(verified)
        contents = cas.unpack(verified.content_hash, TarGzFormat())
        assert (contents / "lib" / "mod.wasm").read_bytes() == b"\x00asm"
        (contents / "marker").write_text("x")
        assert cas.unpack(verified.content_hash, TarGzFormat()) == contents
        assert (contents / "marker").exists()
        assert list(cas.staging_dir.iterdir()) == []


class TestEnumerateAndEvict:
    def test_iter_hashes_sorted_and_skips_strays(self, cas):
        hashes = sorted(cas.ingest(_verified(cas, d)).parent.name for d in (b"one", b"two"))
        stray = cas.base_path / "zz" / "zz" / "not-a-digest"
        stray.mkdir(parents=True)
        (stray / "archive").write_bytes(b"?")
        assert list(cas.iter_hashes()) == [f"sha256:{h}" for h in hashes]

    def test_evict_removes_object(self, cas):
        verified = _verified(cas, b"gone soon")
        cas.ingest(verified)
        cas.evict(verified.content_hash)
        assert not cas.exists(verified.content_hash)
        assert not cas.object_dir(verified.content_hash).exists()

    def test_discard_staging(self, cas):
        (cas.staging_dir / "leftover.part").write_bytes(b"x")
        (cas.staging_dir / "unpack-1").mkdir()
        cas.discard_staging()
        assert list(cas.staging_dir.iterdir()) == []
