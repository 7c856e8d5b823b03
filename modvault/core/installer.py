"""Installer — drives resolution, retrieval, verification and materialization.

Lifecycle of one ``install`` call:

1. Reuse the lockfile when it was produced from the same manifest (and no
   refresh is forced); otherwise resolve against the registry.
2. For every node, concurrently and bounded by ``max_download_workers``:
   take the verified archive from the cache, or claim the download (a
   concurrent claimant of the same content hash waits for the first), fetch,
   verify, move into the content-addressed cache and record the cache entry.
3. Unpack once into the cache, copy or link into
   ``{packages_dir}/{name}@{version}``, record the package as installed.
4. Merge ABI descriptors, then write the lockfile if every node succeeded.

A node that fails leaves no temporary files and no installed record; nodes
that succeeded stay installed and the partial result is reported through
``InstallError.report``.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from modvault.config import VaultConfig
from modvault.core.abi import enforce_abi, merge_abi
from modvault.core.context import RunContext
from modvault.core.local_store import LocalStore
from modvault.core.registry_client import PackageRegistry
from modvault.core.resolver import Resolver
from modvault.core.verifier import ContentVerifier
from modvault.errors import (
    InstallCancelled,
    InstallError,
    ModvaultError,
    ResolutionError,
    VerificationError,
)
from modvault.models.graph import DependencyGraph, ResolvedNode
from modvault.models.lockfile import Lockfile
from modvault.models.manifest import Manifest
from modvault.models.package import AbiDescriptor, PackageId
from modvault.models.registry import ArchiveFormat
from modvault.models.reports import (
    InstallReport,
    NodeOutcome,
    NodeStatus,
    PackageVerification,
    VerificationReport,
)
from modvault.models.store import CacheEntry, InstalledPackageRecord

logger = logging.getLogger(__name__)


class Installer:
    """Installs the resolved graph of a manifest into one project.

    Parameters
    ----------
    config:
        Worker budget, wait timeout, link mode, trust and ABI policy.
    store:
        The project's local store.
    registry:
        Where metadata and archives come from.
    verifier:
        Defaults to a verifier built from the config's trust policy.
    """

    def __init__(
        self,
        config: VaultConfig,
        store: LocalStore,
        registry: PackageRegistry,
        verifier: ContentVerifier | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._registry = registry
        self._verifier = verifier or ContentVerifier(
            config.trusted_public_key, config.allow_unsigned
        )
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Abort in-flight downloads and skip nodes not yet started.

        Cancellation is final for this installer; create a new one to retry.
        """
        logger.warning("Install cancelled")
        self._cancel_event.set()

    def new_context(self) -> RunContext:
        return RunContext(self._registry, self._cancel_event)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self, manifest: Manifest, context: RunContext, *, refresh: bool = False
    ) -> tuple[DependencyGraph, bool]:
        """Graph to install, and whether it came from the lockfile."""
        if not refresh:
            locked = self._store.read_lockfile()
            if locked is not None and locked.manifest_hash == manifest.resolution_hash():
                try:
                    graph = locked.to_graph()
                    graph.topological_order()
                except (ValueError, KeyError, ResolutionError) as exc:
                    logger.warning("Lockfile is inconsistent, re-resolving: %s", exc)
                else:
                    logger.info("Using lockfile %s", self._store.lockfile_path)
                    return graph, True
        return Resolver(context).resolve(manifest), False

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def install(self, manifest: Manifest, *, refresh: bool = False) -> InstallReport:
        """Install *manifest*'s dependencies.

        Raises
        ------
        ResolutionError
            Resolution failed; nothing was installed.
        InstallError
            One or more nodes failed; ``report`` holds every outcome.
        AbiIncompatible
            ABI conflicts were found and ``strict_abi`` is on.
        """
        with self.new_context() as context:
            graph, used_lockfile = self.plan(manifest, context, refresh=refresh)
            order = graph.topological_order()
            outcomes, errors = self._install_nodes(graph, order, context)

        descriptors: dict[str, AbiDescriptor | None] = {manifest.label: manifest.abi}
        for outcome in outcomes:
            if outcome.ok:
                node = graph.nodes[outcome.package_id.name]
                descriptors[str(outcome.package_id)] = node.metadata.abi
        diagnostics = merge_abi(descriptors)

        lockfile_written = False
        if not errors and not (self._config.strict_abi and diagnostics):
            statuses = {
                o.package_id.name: o.signature_status
                for o in outcomes if o.signature_status is not None
            }
            lockfile = Lockfile.from_graph(graph, manifest.resolution_hash(), statuses)
            lockfile_written = self._store.write_lockfile(lockfile)

        report = InstallReport(
            outcomes=outcomes,
            abi_diagnostics=diagnostics,
            lockfile_written=lockfile_written,
            used_lockfile=used_lockfile,
        )
        logger.info(
            "Install finished: %d fetched, %d from cache, %d failed",
            len(report.fetched),
            sum(1 for o in outcomes if o.status in (NodeStatus.CACHED, NodeStatus.SHARED)),
            len(errors),
        )
        if errors:
            raise InstallError(report, errors)
        enforce_abi(diagnostics, self._config.strict_abi)
        return report

    def _install_nodes(
        self, graph: DependencyGraph, order: list[PackageId], context: RunContext
    ) -> tuple[list[NodeOutcome], dict[str, ModvaultError]]:
        workers = max(1, self._config.max_download_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="modvault-install") as pool:
            futures = [
                pool.submit(self._install_node, graph.nodes[pid.name], context)
                for pid in order
            ]
            results = [future.result() for future in futures]

        outcomes: list[NodeOutcome] = []
        errors: dict[str, ModvaultError] = {}
        for outcome, error in results:
            outcomes.append(outcome)
            if error is not None:
                errors[outcome.package_id.name] = error
        return outcomes, errors

    def _install_node(
        self, node: ResolvedNode, context: RunContext
    ) -> tuple[NodeOutcome, ModvaultError | None]:
        package_id = node.package_id
        content_hash = node.metadata.content_hash
        try:
            context.check_cancelled(f"install of {package_id}")
            entry, status = self._obtain(node, context)
            context.check_cancelled(f"install of {package_id}")
            install_path = self._materialize(package_id, content_hash, node.metadata.format)
            self._store.commit_install(
                None,
                InstalledPackageRecord(
                    package_id=package_id,
                    content_hash=content_hash,
                    install_path=install_path,
                ),
            )
        except ModvaultError as exc:
            return self._failed(package_id, content_hash, exc)
        except OSError as exc:
            return self._failed(
                package_id,
                content_hash,
                ModvaultError(
                    f"Filesystem error while installing {package_id}: {exc}",
                    package=package_id.name,
                    version=package_id.version,
                ),
            )
        logger.info("Installed %s (%s)", package_id, status.value)
        return (
            NodeOutcome(
                package_id=package_id,
                status=status,
                content_hash=content_hash,
                install_path=install_path,
                signature_status=entry.signature_status,
            ),
            None,
        )

    @staticmethod
    def _failed(
        package_id: PackageId, content_hash: str, error: ModvaultError
    ) -> tuple[NodeOutcome, ModvaultError]:
        status = NodeStatus.CANCELLED if isinstance(error, InstallCancelled) else NodeStatus.FAILED
        logger.error("Installing %s failed: %s", package_id, error.message)
        outcome = NodeOutcome(
            package_id=package_id,
            status=status,
            content_hash=content_hash,
            error_code=error.code,
            error_message=error.message,
        )
        return outcome, error

    def _obtain(self, node: ResolvedNode, context: RunContext) -> tuple[CacheEntry, NodeStatus]:
        """Verified cache entry for the node's content, fetching at most once."""
        content_hash = node.metadata.content_hash
        claim = self._store.claim_fetch(content_hash)
        if claim.cached is not None:
            return self._admit(node, claim.cached), NodeStatus.CACHED
        if claim.must_wait:
            entry = claim.marker.wait(self._config.inflight_wait_seconds)
            return self._admit(node, entry), NodeStatus.SHARED

        try:
            entry = self._fetch_and_store(node, context)
        except ModvaultError as exc:
            self._store.finish_fetch(claim.marker, error=exc)
            raise
        except BaseException:
            self._store.finish_fetch(
                claim.marker,
                error=InstallCancelled(
                    f"Download of {content_hash} was interrupted", content_hash=content_hash
                ),
            )
            raise
        self._store.finish_fetch(claim.marker, entry=entry)
        return entry, NodeStatus.FETCHED

    def _admit(self, node: ResolvedNode, entry: CacheEntry) -> CacheEntry:
        """Apply this installer's trust policy to an archive someone else cached."""
        status = self._verifier.admit_cached(node.package_id, entry, node.metadata.signature)
        if status is entry.signature_status:
            return entry
        upgraded = entry.model_copy(update={"signature_status": status})
        self._store.record_cache_entry(upgraded)
        return upgraded

    def _fetch_and_store(self, node: ResolvedNode, context: RunContext) -> CacheEntry:
        fetched = self._registry.fetch_archive(
            node.package_id,
            self._store.cache.staging_dir,
            metadata=node.metadata,
            cancel_event=context.cancel_event,
        )
        try:
            verified = self._verifier.verify(fetched)
            context.check_cancelled(f"install of {node.package_id}")
            archive_path = self._store.cache.ingest(verified)
        except BaseException:
            Path(fetched.path).unlink(missing_ok=True)
            raise
        entry = CacheEntry(
            content_hash=verified.content_hash,
            path=archive_path,
            verified=True,
            signature_status=verified.signature_status,
            size_bytes=archive_path.stat().st_size,
        )
        self._store.record_cache_entry(entry)
        return entry

    # ------------------------------------------------------------------
    # On-disk layout
    # ------------------------------------------------------------------

    def _materialize(
        self, package_id: PackageId, content_hash: str, archive_format: ArchiveFormat
    ) -> Path:
        """Populate ``{packages_dir}/{name}@{version}`` from the unpacked cache."""
        contents = self._store.cache.unpack(content_hash, archive_format)
        target = self._store.install_path(package_id)
        record = self._store.lookup_installed(package_id.name)
        present = target.exists() or target.is_symlink()
        if present and record is not None and record.content_hash == content_hash:
            return target

        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            if self._config.link_mode == "symlink":
                os.symlink(contents, staging, target_is_directory=True)
            else:
                shutil.copytree(contents, staging, symlinks=True)
            if present:
                _remove_path(target)
            try:
                os.replace(staging, target)
            except OSError:
                # A concurrent install of the same version got there first.
                if not target.exists():
                    raise
        finally:
            if staging.exists() or staging.is_symlink():
                _remove_path(staging)
        self._prune_other_versions(package_id)
        return target

    def _prune_other_versions(self, package_id: PackageId) -> None:
        target = self._store.install_path(package_id)
        base = package_id.name.rsplit("/", 1)[-1]
        for stale in target.parent.glob(f"{base}@*"):
            if stale.name != target.name and not stale.name.startswith("."):
                logger.info("Removing superseded %s", stale.name)
                _remove_path(stale)

    # ------------------------------------------------------------------
    # Offline re-verification
    # ------------------------------------------------------------------

    def verify_only(self) -> VerificationReport:
        """Re-verify every locked package's cached archive without network access.

        Archives that fail are evicted from the cache.  Without a lockfile
        there is nothing to verify and the report is empty.
        """
        lockfile = self._store.read_lockfile()
        if lockfile is None:
            logger.warning("No lockfile at %s; nothing to verify", self._store.lockfile_path)
            return VerificationReport()

        results: list[PackageVerification] = []
        for name, locked in sorted(lockfile.packages.items()):
            package_id = PackageId(name=name, version=locked.version)
            entry = self._store.lookup_cached(locked.content_hash)
            if entry is None:
                results.append(PackageVerification(
                    package_id=package_id,
                    content_hash=locked.content_hash,
                    ok=False,
                    error_code="not_cached",
                    error_message=f"No cached archive for {package_id}",
                ))
                continue
            try:
                status = self._verifier.check_file(
                    package_id, entry.path, locked.content_hash, locked.signature
                )
            except VerificationError as exc:
                logger.error("Cached archive for %s failed verification: %s", package_id, exc)
                self._store.evict(locked.content_hash)
                results.append(PackageVerification(
                    package_id=package_id,
                    content_hash=locked.content_hash,
                    ok=False,
                    error_code=exc.code,
                    error_message=exc.message,
                ))
                continue
            results.append(PackageVerification(
                package_id=package_id,
                content_hash=locked.content_hash,
                ok=True,
                signature_status=status,
            ))
        return VerificationReport(packages=results)


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)
