"""Shared test fixtures for modvault."""

from __future__ import annotations

import gzip
import io
import tarfile
import tempfile
import threading
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from modvault.api import Modvault
from modvault.config import MANIFEST_FILE_NAME, VaultConfig
from modvault.core.hasher import content_address, sha256_hex
from modvault.core.local_store import LocalStore
from modvault.core.signing import generate_keypair, sign_data
from modvault.errors import PackageNotFound
from modvault.models.package import AbiDescriptor, PackageId
from modvault.models.registry import (
    FetchedArchive,
    RegistryEntry,
    VersionMetadata,
    parse_archive_format,
)


def make_tar_gz(files: dict[str, bytes]) -> bytes:
    """Byte-for-byte reproducible tar.gz (fixed mtimes, sorted members)."""
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for name, data in sorted(files.items()):
                info = tarfile.TarInfo(name)
                info.size = len(data)
                info.mtime = 0
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# In-process registry
# ---------------------------------------------------------------------------


class FakeRegistry:
    """Registry double: serves published archives from memory and counts calls.

    Thread-safe, so concurrent installs can share one instance.
    """

    def __init__(self, private_key: str = "") -> None:
        self._private_key = private_key
        self._packages: dict[str, dict[str, tuple[VersionMetadata, bytes]]] = {}
        self._lock = threading.Lock()
        self.fetches: Counter[str] = Counter()
        self.queries: Counter[str] = Counter()
        self.fetch_delay = 0.0
        self.tampered: set[str] = set()

    def publish(
        self,
        name: str,
        version: str,
        *,
        dependencies: dict[str, str] | None = None,
        files: dict[str, bytes] | None = None,
        payload: bytes | None = None,
        fmt: str = "tar.gz",
        abi: AbiDescriptor | None = None,
        sign: bool = True,
        signature: str | None = None,
    ) -> VersionMetadata:
        if payload is None:
            files = files or {"module.wasm": f"{name}@{version}".encode()}
            payload = make_tar_gz(files)
        if signature is None and sign and self._private_key:
            signature = sign_data(payload, self._private_key)
        meta = VersionMetadata(
            version=version,
            download_url=f"https://registry.test/{name}/{version}.{fmt}",
            content_hash=content_address(sha256_hex(payload)),
            signature=signature,
            format=parse_archive_format(fmt),
            abi=abi,
            dependencies=dependencies or {},
        )
        with self._lock:
            self._packages.setdefault(name, {})[version] = (meta, payload)
        return meta

    def total_fetches(self) -> int:
        return sum(self.fetches.values())

    def list_versions(
        self, name: str, *, cancel_event: threading.Event | None = None
    ) -> RegistryEntry:
        with self._lock:
            self.queries[name] += 1
            versions = self._packages.get(name)
            if versions is None:
                raise PackageNotFound(f"Package '{name}' not found", package=name)
            return RegistryEntry(
                name=name, versions={v: meta for v, (meta, _data) in versions.items()}
            )

    def fetch_archive(
        self,
        package_id: PackageId,
        destination: Path,
        *,
        metadata: VersionMetadata | None = None,
        cancel_event: threading.Event | None = None,
    ) -> FetchedArchive:
        with self._lock:
            self.fetches[str(package_id)] += 1
            meta, data = self._packages[package_id.name][package_id.version]
        if self.fetch_delay:
            time.sleep(self.fetch_delay)
        if str(package_id) in self.tampered:
            data = data + b"\x00tampered"
        meta = metadata or meta
        destination.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=destination, suffix=".part", delete=False) as fh:
            fh.write(data)
        return FetchedArchive(
            package_id=package_id,
            path=Path(fh.name),
            expected_hash=meta.content_hash,
            signature=meta.signature,
            format=meta.format,
            abi=meta.abi,
            download_url=meta.download_url,
            size_bytes=len(data),
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def keypair() -> tuple[str, str]:
    """(private_key_hex, public_key_hex) for signing fake archives."""
    return generate_keypair()


@pytest.fixture
def registry(keypair: tuple[str, str]) -> FakeRegistry:
    """Empty registry that signs everything with the test key."""
    return FakeRegistry(private_key=keypair[0])


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def config(keypair: tuple[str, str]) -> VaultConfig:
    """Development config trusting the test key, with no retry sleeps."""
    return VaultConfig(
        trusted_public_key=keypair[1],
        allow_unsigned=False,
        retry_base_delay_seconds=0.0,
        inflight_wait_seconds=10.0,
        max_download_workers=4,
    )


@pytest.fixture
def store(project_dir: Path, config: VaultConfig) -> LocalStore:
    return LocalStore.for_project(project_dir, config)


@pytest.fixture
def vault(project_dir: Path, config: VaultConfig, registry: FakeRegistry, store: LocalStore) -> Modvault:
    return Modvault(project_dir, config, registry=registry, store=store)


@pytest.fixture
def write_manifest(project_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write ``modvault.toml`` with the given dependencies."""

    def _factory(dependencies: dict[str, str], **extra: Any) -> Path:
        lines = ["[package]", 'name = "app"', 'version = "0.1.0"', "", "[dependencies]"]
        lines += [f'"{name}" = "{expr}"' for name, expr in dependencies.items()]
        for section, body in extra.items():
            lines += ["", f"[{section}]", body]
        path = project_dir / MANIFEST_FILE_NAME
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _factory


@pytest.fixture
def tar_gz() -> Callable[[dict[str, bytes]], bytes]:
    """The reproducible tarball builder used by ``FakeRegistry.publish``."""
    return make_tar_gz
