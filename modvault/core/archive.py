"""Unpacking for the closed set of archive formats.

One unpacker per ``ArchiveFormat`` variant, dispatched on ``kind``.  Tar
members are extracted with the ``data`` filter, which rejects absolute
paths, ``..`` traversal, device files and links escaping the destination.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from collections.abc import Callable
from pathlib import Path

from modvault.errors import ArchiveInvalid
from modvault.models.registry import (
    ArchiveFormat,
    RawModuleFormat,
    TarFormat,
    TarGzFormat,
)

logger = logging.getLogger(__name__)


def _unpack_tar(archive_path: Path, destination: Path, mode: str) -> None:
    try:
        with tarfile.open(archive_path, mode) as tar:
            tar.extractall(destination, filter="data")
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise ArchiveInvalid(
            f"Cannot unpack {archive_path.name}: {exc}", path=str(archive_path)
        ) from exc


def _unpack_tar_gz(archive_path: Path, destination: Path, fmt: TarGzFormat) -> None:
    _unpack_tar(archive_path, destination, "r:gz")


def _unpack_plain_tar(archive_path: Path, destination: Path, fmt: TarFormat) -> None:
    _unpack_tar(archive_path, destination, "r:")


def _unpack_raw(archive_path: Path, destination: Path, fmt: RawModuleFormat) -> None:
    shutil.copyfile(archive_path, destination / fmt.filename)


_UNPACKERS: dict[str, Callable[[Path, Path, ArchiveFormat], None]] = {
    "tar.gz": _unpack_tar_gz,
    "tar": _unpack_plain_tar,
    "raw": _unpack_raw,
}


def unpack_archive(archive_path: Path, destination: Path, archive_format: ArchiveFormat) -> None:
    """Unpack *archive_path* into the (existing, empty) *destination* directory."""
    unpacker = _UNPACKERS.get(archive_format.kind)
    if unpacker is None:
        raise ArchiveInvalid(f"Unsupported archive format {archive_format.kind!r}")
    logger.debug("Unpacking %s (%s) into %s", archive_path, archive_format.kind, destination)
    unpacker(Path(archive_path), Path(destination), archive_format)
