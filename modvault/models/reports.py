"""Install and verification reports handed back to the command-line layer."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from modvault.models.package import PackageId
from modvault.models.registry import SignatureStatus


class NodeStatus(str, Enum):
    """How a graph node ended up on disk (or didn't)."""

    FETCHED = "fetched"  # downloaded and verified in this run
    CACHED = "cached"  # verified bytes were already in the store
    SHARED = "shared"  # another in-flight install fetched the same bytes
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeOutcome(BaseModel):
    """Result of installing one resolved package."""

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    status: NodeStatus
    content_hash: str = ""
    install_path: Path | None = None
    signature_status: SignatureStatus | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status not in (NodeStatus.FAILED, NodeStatus.CANCELLED)


class AbiDiagnostic(BaseModel):
    """Two or more packages expose different shapes for one interface symbol."""

    model_config = ConfigDict(frozen=True)

    interface: str
    symbol: str
    shapes: dict[str, str]  # package label -> signature

    def describe(self) -> str:
        parts = ", ".join(f"{pkg}: {sig}" for pkg, sig in sorted(self.shapes.items()))
        return f"Interface '{self.interface}' symbol '{self.symbol}' conflicts ({parts})"


class InstallReport(BaseModel):
    """Outcome of one ``install`` call, including partial success."""

    model_config = ConfigDict(frozen=True)

    outcomes: list[NodeOutcome] = Field(default_factory=list)
    abi_diagnostics: list[AbiDiagnostic] = Field(default_factory=list)
    lockfile_written: bool = False
    used_lockfile: bool = False

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def fetched(self) -> list[PackageId]:
        return [o.package_id for o in self.outcomes if o.status == NodeStatus.FETCHED]

    @property
    def failed(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def outcome_for(self, name: str) -> NodeOutcome | None:
        for outcome in self.outcomes:
            if outcome.package_id.name == name:
                return outcome
        return None


class PackageVerification(BaseModel):
    """Re-verification result for one locked package."""

    model_config = ConfigDict(frozen=True)

    package_id: PackageId
    content_hash: str
    ok: bool
    signature_status: SignatureStatus | None = None
    error_code: str | None = None
    error_message: str | None = None


class VerificationReport(BaseModel):
    """Result of ``verify_only``."""

    model_config = ConfigDict(frozen=True)

    packages: list[PackageVerification] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(p.ok for p in self.packages)
