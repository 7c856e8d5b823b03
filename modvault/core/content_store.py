"""Content-addressed archive cache on disk.

Storage layout::

    {root}/{sha256[0:2]}/{sha256[2:4]}/{sha256}/archive    verified archive bytes
    {root}/{sha256[0:2]}/{sha256[2:4]}/{sha256}/contents/  unpacked tree
    {root}/.staging/                                      in-progress downloads

Objects are immutable once stored: storing the same content twice keeps the
first copy.  Only verified archives are ever moved in; a blob whose bytes no
longer match its address is treated as absent and may be evicted.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

from modvault.core.archive import unpack_archive
from modvault.core.hasher import (
    content_address,
    digest_of,
    normalize_content_hash,
    sha256_file,
)
from modvault.models.registry import ArchiveFormat, VerifiedArchive

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "archive"
CONTENTS_NAME = "contents"
STAGING_NAME = ".staging"


class ContentAddressedStore:
    """SHA-256 keyed, immutable archive cache.

    Parameters
    ----------
    base_path:
        Root directory of the cache.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    @property
    def staging_dir(self) -> Path:
        """Where downloads land before verification (same filesystem as the cache)."""
        return self._base / STAGING_NAME

    def object_dir(self, content_hash: str) -> Path:
        digest = digest_of(content_hash)
        return self._base / digest[:2] / digest[2:4] / digest

    def archive_path(self, content_hash: str) -> Path:
        return self.object_dir(content_hash) / ARCHIVE_NAME

    def contents_dir(self, content_hash: str) -> Path:
        return self.object_dir(content_hash) / CONTENTS_NAME

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def ingest(self, verified: VerifiedArchive) -> Path:
        """Move a verified archive into its content address.

        If intact content already lives there the incoming file is discarded.
        """
        target = self.archive_path(verified.content_hash)
        if target.exists() and self.verify(verified.content_hash):
            Path(verified.path).unlink(missing_ok=True)
            logger.debug("Content %s already stored", verified.content_hash)
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(verified.path, target)
        logger.debug("Stored %s for %s", verified.content_hash, verified.package_id)
        return target

    def unpack(self, content_hash: str, archive_format: ArchiveFormat) -> Path:
        """Unpack the stored archive once; return its ``contents`` directory."""
        contents = self.contents_dir(content_hash)
        if contents.is_dir():
            return contents
        work = Path(tempfile.mkdtemp(prefix="unpack-", dir=self.staging_dir))
        try:
            unpack_archive(self.archive_path(content_hash), work, archive_format)
            try:
                os.rename(work, contents)
            except OSError:
                if not contents.is_dir():
                    raise
                # Another installer finished first; its tree is identical.
        finally:
            if work.exists():
                shutil.rmtree(work, ignore_errors=True)
        return contents

    # ------------------------------------------------------------------
    # Check, enumerate and evict
    # ------------------------------------------------------------------

    def exists(self, content_hash: str) -> bool:
        return self.archive_path(content_hash).is_file()

    def verify(self, content_hash: str) -> bool:
        """Re-hash stored bytes and compare against the content address."""
        path = self.archive_path(content_hash)
        if not path.is_file():
            return False
        return content_address(sha256_file(path)) == content_address(digest_of(content_hash))

    def evict(self, content_hash: str) -> None:
        """Remove an object (archive and unpacked tree)."""
        obj = self.object_dir(content_hash)
        if obj.exists():
            shutil.rmtree(obj)
            logger.warning("Evicted cached content %s", content_hash)

    def iter_hashes(self) -> Iterator[str]:
        """Yield the content hash of every stored archive, in sorted order."""
        for archive in sorted(self._base.glob(f"??/??/*/{ARCHIVE_NAME}")):
            try:
                yield normalize_content_hash(archive.parent.name)
            except ValueError:
                logger.debug("Ignoring stray cache entry %s", archive.parent)

    def discard_staging(self) -> None:
        """Remove leftovers of interrupted downloads."""
        for leftover in self.staging_dir.iterdir():
            if leftover.is_dir():
                shutil.rmtree(leftover, ignore_errors=True)
            else:
                leftover.unlink(missing_ok=True)
