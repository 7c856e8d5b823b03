"""Local Store — transactional index of installed packages and cached archives.

The index is a SQLite database next to the content-addressed cache::

    {store_dir}/modvault.sqlite   installed_packages, cache_entries
    {store_dir}/cache/            content-addressed archives
    {project_dir}/modvault.lock   serialized lockfile

Design:
- Every mutation runs inside ``BEGIN IMMEDIATE ... COMMIT``; a crash leaves
  the pre- or post-state, never a partial row set.
- Writes are serialized by one lock per store, and across processes by
  SQLite's write lock.
- An unreadable database surfaces as ``StorageCorrupted``; ``rebuild()``
  recreates it from the cache directory plus the lockfile.
- In-flight markers let concurrent installers of the same content hash share
  one download: the first caller fetches, later callers wait for its result.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from modvault.config import VaultConfig
from modvault.core.content_store import ContentAddressedStore
from modvault.errors import ModvaultError, RegistryUnavailable, StorageBusy, StorageCorrupted
from modvault.models.lockfile import Lockfile, LockfileInvalid
from modvault.models.package import PackageId
from modvault.models.registry import SignatureStatus
from modvault.models.store import CacheEntry, InstalledPackageRecord

logger = logging.getLogger(__name__)

DATABASE_NAME = "modvault.sqlite"
CACHE_DIR_NAME = "cache"


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_INSTALLED = """
CREATE TABLE IF NOT EXISTS installed_packages (
    name          TEXT PRIMARY KEY,
    version       TEXT NOT NULL,
    content_hash  TEXT NOT NULL,
    install_path  TEXT NOT NULL,
    installed_at  TEXT NOT NULL
);
"""

_CREATE_CACHE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    content_hash      TEXT PRIMARY KEY,
    path              TEXT NOT NULL,
    verified          INTEGER NOT NULL DEFAULT 0,
    signature_status  TEXT NOT NULL,
    size_bytes        INTEGER NOT NULL DEFAULT 0,
    verified_at       TEXT NOT NULL
);
"""

_CREATE_IDX_INSTALLED_HASH = """
CREATE INDEX IF NOT EXISTS idx_installed_hash ON installed_packages(content_hash);
"""


# ---------------------------------------------------------------------------
# In-flight download markers
# ---------------------------------------------------------------------------

class InFlightFetch:
    """Completion handle for one content hash being fetched."""

    def __init__(self, content_hash: str) -> None:
        self.content_hash = content_hash
        self._done = threading.Event()
        self._entry: CacheEntry | None = None
        self._error: ModvaultError | None = None

    def settle(self, entry: CacheEntry | None, error: ModvaultError | None) -> None:
        self._entry = entry
        self._error = error
        self._done.set()

    def wait(self, timeout: float) -> CacheEntry:
        """Block until the owning fetch finishes; re-raise its failure."""
        if not self._done.wait(timeout):
            raise RegistryUnavailable(
                f"Timed out after {timeout:.0f}s waiting for the in-flight "
                f"download of {self.content_hash}",
                content_hash=self.content_hash,
            )
        if self._error is not None:
            raise self._error
        if self._entry is None:
            raise RegistryUnavailable(
                f"In-flight download of {self.content_hash} ended without a result",
                content_hash=self.content_hash,
            )
        return self._entry


@dataclass(frozen=True)
class FetchClaim:
    """Outcome of ``LocalStore.claim_fetch``.

    Exactly one of ``cached`` (bytes already present), ``owner`` (caller must
    fetch and then call ``finish_fetch``) or a waiting claim applies.
    """

    marker: InFlightFetch | None = None
    cached: CacheEntry | None = None
    owner: bool = False

    @property
    def must_wait(self) -> bool:
        return self.cached is None and not self.owner


# ---------------------------------------------------------------------------
# Local Store
# ---------------------------------------------------------------------------

class LocalStore:
    """Installed-package and cache index, plus lockfile persistence.

    Parameters
    ----------
    store_dir:
        Holds the SQLite index and the content-addressed cache.
    lockfile_path:
        Where the project's lockfile is read and written.
    packages_dir:
        Root of the installed layout, ``{packages_dir}/{name}@{version}``.
    """

    def __init__(self, store_dir: Path, lockfile_path: Path, packages_dir: Path) -> None:
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = self._store_dir / DATABASE_NAME
        self._lockfile_path = Path(lockfile_path)
        self._packages_dir = Path(packages_dir)
        self.cache = ContentAddressedStore(self._store_dir / CACHE_DIR_NAME)

        self._write_lock = threading.RLock()
        self._schema_ready = False
        self._inflight: dict[str, InFlightFetch] = {}
        self._inflight_lock = threading.Lock()
        self.busy_timeout_seconds = 30.0

    @classmethod
    def for_project(cls, project_dir: Path, config: VaultConfig) -> LocalStore:
        """Store laid out under *project_dir* according to *config*."""
        project_dir = Path(project_dir)
        return cls(
            store_dir=project_dir / config.store_dir,
            lockfile_path=project_dir / config.lockfile_name,
            packages_dir=project_dir / config.packages_dir,
        )

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def lockfile_path(self) -> Path:
        return self._lockfile_path

    @property
    def packages_dir(self) -> Path:
        return self._packages_dir

    def install_path(self, package_id: PackageId) -> Path:
        return self._packages_dir / f"{package_id.name}@{package_id.version}"

    # ------------------------------------------------------------------
    # Connection and transaction plumbing
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=self.busy_timeout_seconds,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        with self._write_lock:
            conn.execute(_CREATE_INSTALLED)
            conn.execute(_CREATE_CACHE)
            conn.execute(_CREATE_IDX_INSTALLED_HASH)
            self._schema_ready = True

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Open a connection; database errors become ``StorageCorrupted``.

        Lock contention that outlasts ``busy_timeout_seconds`` becomes
        ``StorageBusy`` instead.
        """
        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect()
            self._ensure_schema(conn)
            yield conn
        except sqlite3.DatabaseError as exc:
            if _is_busy(exc):
                raise StorageBusy(
                    f"Local store index {self._db_path} is locked: {exc}",
                    path=str(self._db_path),
                ) from exc
            raise self._corrupted(exc) from exc
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction: commit on success, roll back on error."""
        with self._write_lock, self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _corrupted(self, exc: Exception) -> StorageCorrupted:
        logger.error("Local store index %s is unreadable: %s", self._db_path, exc)
        return StorageCorrupted(
            f"Local store index {self._db_path} is unreadable: {exc}",
            path=str(self._db_path),
        )

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    def lookup_cached(self, content_hash: str) -> CacheEntry | None:
        """Verified cache entry for *content_hash* whose archive is present.

        A row whose archive has vanished from disk is dropped and ``None``
        returned.
        """
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM cache_entries WHERE content_hash = ? AND verified = 1",
                (content_hash,),
            ).fetchone()
        if row is None:
            return None
        entry = self._row_to_cache_entry(row)
        if not entry.path.is_file():
            logger.warning("Cached archive for %s is missing; dropping entry", content_hash)
            with self.transaction() as conn:
                conn.execute("DELETE FROM cache_entries WHERE content_hash = ?", (content_hash,))
            return None
        logger.debug("Cache hit for %s", content_hash)
        return entry

    def record_cache_entry(self, entry: CacheEntry) -> None:
        with self.transaction() as conn:
            self._upsert_cache_entry(conn, entry)

    def cache_entries(self) -> list[CacheEntry]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM cache_entries ORDER BY content_hash"
            ).fetchall()
        return [self._row_to_cache_entry(row) for row in rows]

    def evict(self, content_hash: str) -> None:
        """Drop the cache row and its archive from disk."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM cache_entries WHERE content_hash = ?", (content_hash,))
        self.cache.evict(content_hash)

    @staticmethod
    def _upsert_cache_entry(conn: sqlite3.Connection, entry: CacheEntry) -> None:
        conn.execute(
            """
            INSERT INTO cache_entries
                (content_hash, path, verified, signature_status, size_bytes, verified_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(content_hash) DO UPDATE SET
                path = excluded.path,
                verified = excluded.verified,
                signature_status = excluded.signature_status,
                size_bytes = excluded.size_bytes,
                verified_at = excluded.verified_at
            """,
            (
                entry.content_hash,
                str(entry.path),
                int(entry.verified),
                entry.signature_status.value,
                entry.size_bytes,
                entry.verified_at.isoformat(),
            ),
        )

    @staticmethod
    def _row_to_cache_entry(row: tuple) -> CacheEntry:
        content_hash, path, verified, status, size, verified_at = row
        return CacheEntry(
            content_hash=content_hash,
            path=Path(path),
            verified=bool(verified),
            signature_status=SignatureStatus(status),
            size_bytes=size,
            verified_at=datetime.fromisoformat(verified_at),
        )

    # ------------------------------------------------------------------
    # Installed packages
    # ------------------------------------------------------------------

    def lookup_installed(self, name: str) -> InstalledPackageRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM installed_packages WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def installed_packages(self) -> list[InstalledPackageRecord]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM installed_packages ORDER BY name").fetchall()
        return [self._row_to_record(row) for row in rows]

    def record_installed(self, record: InstalledPackageRecord) -> bool:
        """Persist *record*; returns False when an identical row already exists."""
        return self.commit_install(None, record)

    def commit_install(
        self, cache_entry: CacheEntry | None, record: InstalledPackageRecord
    ) -> bool:
        """Write the cache entry and installed record in one transaction.

        An installed row that already names the same version, hash and path
        is left untouched so repeated installs do not change the store.
        Returns True if anything was written.
        """
        with self.transaction() as conn:
            wrote = False
            if cache_entry is not None:
                self._upsert_cache_entry(conn, cache_entry)
                wrote = True
            row = conn.execute(
                "SELECT version, content_hash, install_path FROM installed_packages "
                "WHERE name = ?",
                (record.package_id.name,),
            ).fetchone()
            current = (record.package_id.version, record.content_hash, str(record.install_path))
            if row is None or tuple(row) != current:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO installed_packages
                        (name, version, content_hash, install_path, installed_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (record.package_id.name, *current, record.installed_at.isoformat()),
                )
                wrote = True
        if wrote:
            logger.debug("Recorded %s as installed", record.package_id)
        return wrote

    def remove_installed(self, name: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM installed_packages WHERE name = ?", (name,))

    @staticmethod
    def _row_to_record(row: tuple) -> InstalledPackageRecord:
        name, version, content_hash, install_path, installed_at = row
        return InstalledPackageRecord(
            package_id=PackageId(name=name, version=version),
            content_hash=content_hash,
            install_path=Path(install_path),
            installed_at=datetime.fromisoformat(installed_at),
        )

    # ------------------------------------------------------------------
    # In-flight fetch coordination
    # ------------------------------------------------------------------

    def claim_fetch(self, content_hash: str) -> FetchClaim:
        """Decide who fetches *content_hash*.

        Returns a cached entry when verified bytes exist, an owner claim for
        the first caller, or a waiting claim for every concurrent caller.
        """
        with self._inflight_lock:
            marker = self._inflight.get(content_hash)
            if marker is not None:
                logger.debug("Waiting on in-flight download of %s", content_hash)
                return FetchClaim(marker=marker)
            cached = self.lookup_cached(content_hash)
            if cached is not None:
                return FetchClaim(cached=cached)
            marker = InFlightFetch(content_hash)
            self._inflight[content_hash] = marker
            return FetchClaim(marker=marker, owner=True)

    def finish_fetch(
        self,
        marker: InFlightFetch,
        entry: CacheEntry | None = None,
        error: ModvaultError | None = None,
    ) -> None:
        """Release an owner claim, waking every waiter with the result."""
        with self._inflight_lock:
            self._inflight.pop(marker.content_hash, None)
        marker.settle(entry, error)

    # ------------------------------------------------------------------
    # Lockfile
    # ------------------------------------------------------------------

    def read_lockfile(self) -> Lockfile | None:
        """Current lockfile, or None when absent or unreadable."""
        try:
            data = self._lockfile_path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return Lockfile.from_bytes(data)
        except LockfileInvalid as exc:
            logger.warning("Ignoring unreadable lockfile %s: %s", self._lockfile_path, exc)
            return None

    def write_lockfile(self, lockfile: Lockfile) -> bool:
        """Atomically write *lockfile*; returns False if the bytes are unchanged."""
        data = lockfile.to_bytes()
        with self._write_lock:
            try:
                if self._lockfile_path.read_bytes() == data:
                    return False
            except FileNotFoundError:
                pass
            self._lockfile_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._lockfile_path.name}.", dir=self._lockfile_path.parent
            )
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp_name, self._lockfile_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        logger.info("Wrote lockfile %s (%d package(s))", self._lockfile_path, len(lockfile.packages))
        return True

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def rebuild(self) -> int:
        """Recreate the index from the cache directory and the lockfile.

        The old database is moved aside.  Every cached archive is re-hashed;
        intact ones become verified cache entries and corrupt ones are
        evicted.  Locked packages whose archive is cached and whose install
        directory exists are recorded as installed.  Returns the number of
        cache entries recovered.
        """
        with self._write_lock:
            for suffix in ("", "-wal", "-shm"):
                path = self._db_path.with_name(self._db_path.name + suffix)
                if path.exists():
                    path.replace(path.with_name(path.name + ".corrupt"))
            self._schema_ready = False

            lockfile = self.read_lockfile()
            statuses: dict[str, SignatureStatus] = {}
            if lockfile is not None:
                for locked in lockfile.packages.values():
                    statuses[locked.content_hash] = locked.signature_status

            recovered: dict[str, CacheEntry] = {}
            for content_hash in list(self.cache.iter_hashes()):
                if not self.cache.verify(content_hash):
                    self.cache.evict(content_hash)
                    continue
                archive = self.cache.archive_path(content_hash)
                recovered[content_hash] = CacheEntry(
                    content_hash=content_hash,
                    path=archive,
                    verified=True,
                    signature_status=statuses.get(content_hash, SignatureStatus.UNSIGNED),
                    size_bytes=archive.stat().st_size,
                )

            with self.transaction() as conn:
                for entry in recovered.values():
                    self._upsert_cache_entry(conn, entry)
                if lockfile is not None:
                    for name, locked in sorted(lockfile.packages.items()):
                        package_id = PackageId(name=name, version=locked.version)
                        target = self.install_path(package_id)
                        if locked.content_hash in recovered and target.exists():
                            conn.execute(
                                "INSERT OR REPLACE INTO installed_packages "
                                "(name, version, content_hash, install_path, installed_at) "
                                "VALUES (?, ?, ?, ?, ?)",
                                (
                                    name,
                                    locked.version,
                                    locked.content_hash,
                                    str(target),
                                    datetime.now(timezone.utc).isoformat(),
                                ),
                            )

        logger.warning(
            "Rebuilt local store index %s: %d cache entr(y/ies) recovered",
            self._db_path, len(recovered),
        )
        return len(recovered)


def _is_busy(exc: sqlite3.DatabaseError) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is None:
        return False
    return code & 0xFF in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED)
