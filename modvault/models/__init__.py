"""modvault data models — all Pydantic v2, all frozen (immutable)."""

from modvault.models.graph import DependencyEdge, DependencyGraph, ResolvedNode
from modvault.models.lockfile import LockedPackage, Lockfile, LockfileInvalid
from modvault.models.manifest import Manifest
from modvault.models.package import AbiDescriptor, PackageId
from modvault.models.registry import (
    ArchiveFormat,
    FetchedArchive,
    RawModuleFormat,
    RegistryEntry,
    SignatureStatus,
    TarFormat,
    TarGzFormat,
    VerifiedArchive,
    VersionMetadata,
    parse_archive_format,
)
from modvault.models.reports import (
    AbiDiagnostic,
    InstallReport,
    NodeOutcome,
    NodeStatus,
    PackageVerification,
    VerificationReport,
)
from modvault.models.store import CacheEntry, InstalledPackageRecord

__all__ = [
    # package
    "PackageId",
    "AbiDescriptor",
    # manifest
    "Manifest",
    # registry
    "ArchiveFormat",
    "TarGzFormat",
    "TarFormat",
    "RawModuleFormat",
    "parse_archive_format",
    "SignatureStatus",
    "VersionMetadata",
    "RegistryEntry",
    "FetchedArchive",
    "VerifiedArchive",
    # graph
    "ResolvedNode",
    "DependencyEdge",
    "DependencyGraph",
    # lockfile
    "LockedPackage",
    "Lockfile",
    "LockfileInvalid",
    # store
    "CacheEntry",
    "InstalledPackageRecord",
    # reports
    "NodeStatus",
    "NodeOutcome",
    "AbiDiagnostic",
    "InstallReport",
    "PackageVerification",
    "VerificationReport",
]
