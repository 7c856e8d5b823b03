"""Registry metadata, archive formats, and fetched/verified archive models.

The set of archive formats is fixed by the registry, so it is modelled as a
closed discriminated union: one variant per format, selected by ``kind``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from modvault.core.hasher import normalize_content_hash
from modvault.models.package import AbiDescriptor, PackageId


class SignatureStatus(str, Enum):
    """What is known about an archive's detached signature."""

    UNSIGNED = "unsigned"  # no signature published
    SIGNED = "signed"  # signature published, not yet checked
    VERIFIED = "verified"  # signature checked against the trusted key


# ---------------------------------------------------------------------------
# Archive formats (closed set)
# ---------------------------------------------------------------------------

class TarGzFormat(BaseModel):
    """Gzip-compressed tarball."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tar.gz"] = "tar.gz"


class TarFormat(BaseModel):
    """Uncompressed tarball."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tar"] = "tar"


class RawModuleFormat(BaseModel):
    """A single binary module, stored as-is under ``filename``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["raw"] = "raw"
    filename: str = "module.wasm"

    @field_validator("filename")
    @classmethod
    def _plain_filename(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError(f"Raw module filename must be a plain file name: {value!r}")
        return value


ArchiveFormat = Annotated[
    Union[TarGzFormat, TarFormat, RawModuleFormat],
    Field(discriminator="kind"),
]

_ARCHIVE_FORMAT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ArchiveFormat)


def parse_archive_format(value: str | dict[str, Any] | None) -> ArchiveFormat:
    """Build an archive format from its wire form (``"tar.gz"`` or a dict)."""
    if value is None:
        return TarGzFormat()
    if isinstance(value, str):
        value = {"kind": value}
    return _ARCHIVE_FORMAT_ADAPTER.validate_python(value)


# ---------------------------------------------------------------------------
# Registry metadata
# ---------------------------------------------------------------------------

class VersionMetadata(BaseModel):
    """Published metadata for one version of a package."""

    model_config = ConfigDict(frozen=True)

    version: str
    download_url: str
    content_hash: str  # "sha256:<hex>"
    signature: str | None = None  # hex Ed25519 detached signature
    format: ArchiveFormat = Field(default_factory=TarGzFormat)
    abi: AbiDescriptor | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)

    @field_validator("content_hash")
    @classmethod
    def _normalize_hash(cls, value: str) -> str:
        return normalize_content_hash(value)

    @field_validator("signature")
    @classmethod
    def _blank_signature_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def signature_status(self) -> SignatureStatus:
        return SignatureStatus.SIGNED if self.signature else SignatureStatus.UNSIGNED


class RegistryEntry(BaseModel):
    """A package name and every version the registry publishes for it.

    Cached in memory for one run; never persisted raw.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    versions: dict[str, VersionMetadata] = Field(default_factory=dict)

    def version_strings(self) -> list[str]:
        return sorted(self.versions)

    def get(self, version: str) -> VersionMetadata | None:
        return self.versions.get(version)


# ---------------------------------------------------------------------------
# Archives in flight
# ---------------------------------------------------------------------------

class FetchedArchive(BaseModel):
    """Downloaded bytes plus the metadata-declared hash and signature.

    NOT trusted: nothing downstream may use the file until the verifier
    has turned it into a ``VerifiedArchive``.
    """

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    path: Path
    expected_hash: str
    signature: str | None = None
    format: ArchiveFormat = Field(default_factory=TarGzFormat)
    abi: AbiDescriptor | None = None
    download_url: str = ""
    size_bytes: int = 0


class VerifiedArchive(BaseModel):
    """An archive whose hash (and signature, when present) checked out."""

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    path: Path
    content_hash: str
    signature_status: SignatureStatus
    format: ArchiveFormat = Field(default_factory=TarGzFormat)
    abi: AbiDescriptor | None = None
    verified_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
