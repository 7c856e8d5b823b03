"""Rows persisted by the local store."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from modvault.models.package import PackageId
from modvault.models.registry import SignatureStatus


class CacheEntry(BaseModel):
    """Content hash -> verified archive on disk.

    Content-addressed: two packages with identical bytes share one entry.
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    path: Path
    verified: bool = True
    signature_status: SignatureStatus = SignatureStatus.UNSIGNED
    size_bytes: int = 0
    verified_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class InstalledPackageRecord(BaseModel):
    """The authoritative record that a package is present on disk."""

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    content_hash: str
    install_path: Path
    installed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
