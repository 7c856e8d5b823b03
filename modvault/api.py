"""Core-facing API consumed by the command-line layer.

``Modvault`` wires the registry client, local store, verifier and installer
for one project directory.  The module-level functions build a short-lived
``Modvault`` per call for callers that do not need to keep one around.

Every failure is raised as a ``ModvaultError`` subclass carrying a stable
``code`` and structured ``context``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from modvault.config import VaultConfig, load_config
from modvault.core.installer import Installer
from modvault.core.local_store import LocalStore
from modvault.core.manifest_loader import load_manifest
from modvault.core.registry_client import PackageRegistry, RegistryClient
from modvault.core.resolver import Resolver
from modvault.core.trust_guard import enforce_trust_policy
from modvault.models.graph import DependencyGraph
from modvault.models.lockfile import Lockfile
from modvault.models.manifest import Manifest
from modvault.models.package import PackageId
from modvault.models.reports import InstallReport, VerificationReport

logger = logging.getLogger(__name__)


class Modvault:
    """Package manager bound to one project directory.

    Parameters
    ----------
    project_dir:
        Directory holding ``modvault.toml``; the store, installed packages
        and lockfile live beneath it.
    config:
        Loaded with ``load_config()`` when omitted.
    registry:
        Registry implementation; a ``RegistryClient`` for ``config`` by default.
    store:
        Local store; laid out under ``project_dir`` by default.
    """

    def __init__(
        self,
        project_dir: Path | str = ".",
        config: VaultConfig | None = None,
        *,
        registry: PackageRegistry | None = None,
        store: LocalStore | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.config = config or load_config()

        # Fails hard before anything touches the network or disk
        enforce_trust_policy(self.config)

        self.store = store or LocalStore.for_project(self.project_dir, self.config)
        self._client: RegistryClient | None = None
        if registry is None:
            self._client = RegistryClient(self.config)
            registry = self._client
        self.registry = registry
        self.installer = Installer(self.config, self.store, self.registry)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def __enter__(self) -> Modvault:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load_manifest(self) -> Manifest:
        return load_manifest(self.project_dir)

    def resolve(
        self, manifest: Manifest | None = None, *, write_lockfile: bool = False
    ) -> tuple[DependencyGraph, Lockfile]:
        """Resolve against the registry's current view, ignoring any lockfile.

        Returns the graph and its lockfile snapshot; the lockfile is only
        persisted when *write_lockfile* is set.
        """
        manifest = manifest or self.load_manifest()
        with self.installer.new_context() as context:
            graph = Resolver(context).resolve(manifest)
        lockfile = Lockfile.from_graph(graph, manifest.resolution_hash())
        if write_lockfile:
            self.store.write_lockfile(lockfile)
        return graph, lockfile

    def install(
        self, manifest: Manifest | None = None, *, refresh: bool = False
    ) -> InstallReport:
        """Install the manifest's dependencies; see ``Installer.install``."""
        return self.installer.install(manifest or self.load_manifest(), refresh=refresh)

    def verify_only(self) -> VerificationReport:
        """Re-verify cached archives of every locked package, offline."""
        return self.installer.verify_only()

    def lookup_installed(self, name: str) -> PackageId | None:
        record = self.store.lookup_installed(name)
        return record.package_id if record else None

    def cancel(self) -> None:
        self.installer.cancel()


# ---------------------------------------------------------------------------
# Functional entry points
# ---------------------------------------------------------------------------

def resolve(
    project_dir: Path | str = ".",
    manifest: Manifest | None = None,
    *,
    config: VaultConfig | None = None,
    registry: PackageRegistry | None = None,
) -> tuple[DependencyGraph, Lockfile]:
    with Modvault(project_dir, config, registry=registry) as vault:
        return vault.resolve(manifest)


def install(
    project_dir: Path | str = ".",
    manifest: Manifest | None = None,
    *,
    config: VaultConfig | None = None,
    registry: PackageRegistry | None = None,
    refresh: bool = False,
) -> InstallReport:
    with Modvault(project_dir, config, registry=registry) as vault:
        return vault.install(manifest, refresh=refresh)


def verify_only(
    project_dir: Path | str = ".",
    *,
    config: VaultConfig | None = None,
    registry: PackageRegistry | None = None,
) -> VerificationReport:
    with Modvault(project_dir, config, registry=registry) as vault:
        return vault.verify_only()


def lookup_installed(
    name: str,
    project_dir: Path | str = ".",
    *,
    config: VaultConfig | None = None,
) -> PackageId | None:
    with Modvault(project_dir, config) as vault:
        return vault.lookup_installed(name)
