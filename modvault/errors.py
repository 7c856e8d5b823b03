"""Error taxonomy shared by every modvault component.

Each error carries a stable ``code`` (used by the command-line layer to pick
an exit status and message template) and a ``context`` dict of structured
fields such as package name, version, expected and actual hashes.

Transient registry failures are retried inside the registry client and only
surface as ``RegistryUnavailable`` once retries are exhausted.  Everything
else propagates immediately.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from modvault.models.reports import InstallReport


class ModvaultError(RuntimeError):
    """Base class for all errors surfaced by the modvault core."""

    code: str = "modvault_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        """Structured form for the command-line layer and install reports."""
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigInvalid(ModvaultError):
    """The global configuration file could not be read or validated."""

    code = "config_invalid"


class ConfigKeyNotFound(ModvaultError):
    """A dotted configuration key does not exist."""

    code = "config_key_not_found"


class ConfigValueInvalid(ConfigInvalid):
    """A value given for a dotted configuration key does not parse."""

    code = "config_value_invalid"


class TrustPolicyError(ModvaultError):
    """The trust configuration is unsafe for the active environment.

    Must not be caught and ignored: the process cannot safely install
    packages with the current settings.
    """

    code = "trust_policy"


# ---------------------------------------------------------------------------
# Manifest and resolution
# ---------------------------------------------------------------------------

class ManifestInvalid(ModvaultError):
    """Malformed manifest input.  Never retried."""

    code = "manifest_invalid"


class ResolutionError(ModvaultError):
    """Base class for dependency resolution failures."""

    code = "resolution_error"


class UnsatisfiableConstraint(ResolutionError):
    """No published version satisfies the merged constraints on a package."""

    code = "unsatisfiable_constraint"

    def __init__(
        self,
        package: str,
        constraints: list[tuple[str, str]],
        available: list[str],
        reason: str = "",
    ) -> None:
        required = ", ".join(f"{expr!r} from {parent}" for parent, expr in constraints)
        message = f"No version of '{package}' satisfies {required or 'the manifest'}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            package=package,
            constraints=[list(c) for c in constraints],
            available=list(available),
        )
        self.package = package
        self.constraints = list(constraints)
        self.available = list(available)


class DependencyCycle(ResolutionError):
    """Resolving a package re-entered a package still open on the path."""

    code = "dependency_cycle"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            cycle=list(cycle),
        )
        self.cycle = list(cycle)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class RegistryError(ModvaultError):
    """Base class for registry failures."""

    code = "registry_error"


class RegistryUnavailable(RegistryError):
    """Transient failures persisted after the bounded retry budget."""

    code = "registry_unavailable"


class PackageNotFound(RegistryError):
    """The registry does not know the package or version.  Not retried."""

    code = "package_not_found"


class MalformedResponse(RegistryError):
    """The registry answered with something we cannot interpret.  Not retried."""

    code = "malformed_response"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationError(ModvaultError):
    """Base class for archive verification failures.  Always fatal."""

    code = "verification_error"


class HashMismatch(VerificationError):
    """Recomputed content hash differs from the registry-declared hash."""

    code = "hash_mismatch"

    def __init__(self, package: str, version: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Content hash mismatch for {package}@{version}: "
            f"expected {expected}, got {actual}",
            package=package,
            version=version,
            expected=expected,
            actual=actual,
        )
        self.expected = expected
        self.actual = actual


class SignatureInvalid(VerificationError):
    """The detached signature does not verify against the trusted key."""

    code = "signature_invalid"


class UnsignedContent(VerificationError):
    """Content is unsigned (or unverifiable) and the trust policy forbids it."""

    code = "unsigned_content"


# ---------------------------------------------------------------------------
# Local store
# ---------------------------------------------------------------------------

class StorageCorrupted(ModvaultError):
    """The local index is unreadable.  Recoverable via ``LocalStore.rebuild``."""

    code = "storage_corrupted"


class StorageBusy(ModvaultError):
    """The local index stayed locked by another writer past the busy timeout."""

    code = "storage_busy"


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------

class AbiIncompatible(ModvaultError):
    """Installed packages expose conflicting interface shapes.

    Reported as a diagnostic by default; raised only in strict mode.
    """

    code = "abi_incompatible"


class ArchiveInvalid(ModvaultError):
    """A verified archive cannot be unpacked (corrupt or unsafe members)."""

    code = "archive_invalid"


class InstallCancelled(ModvaultError):
    """The install was cancelled before this operation completed."""

    code = "install_cancelled"


class InstallError(ModvaultError):
    """One or more packages failed to install.

    ``report`` describes every node, including the ones that did install;
    ``errors`` maps each failed package name to its underlying error.
    """

    code = "install_error"

    def __init__(self, report: InstallReport, errors: dict[str, ModvaultError]) -> None:
        names = ", ".join(sorted(errors))
        super().__init__(
            f"Failed to install {len(errors)} package(s): {names}",
            failed=sorted(errors),
        )
        self.report = report
        self.errors = dict(errors)
