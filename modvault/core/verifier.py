"""Content Verifier — turns an untrusted ``FetchedArchive`` into a ``VerifiedArchive``.

Two checks, both required when their data is present:

1. SHA-256 over the raw archive bytes must equal the registry-declared hash
   (``HashMismatch`` otherwise).
2. A detached Ed25519 signature, when published, must verify against the
   pinned trusted public key (``SignatureInvalid`` otherwise).

Fail-closed: a failure is never downgraded to a warning.  Content without a
verifiable signature (unsigned, or signed while no trusted key is pinned) is
accepted only when the trust policy sets ``allow_unsigned``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from modvault.core.hasher import content_address, normalize_content_hash, sha256_file
from modvault.core.signing import key_fingerprint, verify_data
from modvault.errors import HashMismatch, SignatureInvalid, UnsignedContent
from modvault.models.package import PackageId
from modvault.models.registry import FetchedArchive, SignatureStatus, VerifiedArchive
from modvault.models.store import CacheEntry

logger = logging.getLogger(__name__)


class ContentVerifier:
    """Applies the hash and signature checks under one trust policy.

    Parameters
    ----------
    trusted_public_key:
        Hex Ed25519 public key that signatures must verify against, or ``""``.
    allow_unsigned:
        Accept content whose signature cannot be checked, on hash alone.
    """

    def __init__(self, trusted_public_key: str = "", allow_unsigned: bool = False) -> None:
        self._public_key = trusted_public_key
        self._allow_unsigned = allow_unsigned

    def verify(self, fetched: FetchedArchive) -> VerifiedArchive:
        """Verify *fetched*; raise a ``VerificationError`` subclass on failure."""
        status = self.check_file(
            fetched.package_id, fetched.path, fetched.expected_hash, fetched.signature
        )
        return VerifiedArchive(
            package_id=fetched.package_id,
            path=fetched.path,
            content_hash=normalize_content_hash(fetched.expected_hash),
            signature_status=status,
            format=fetched.format,
            abi=fetched.abi,
        )

    def check_file(
        self,
        package_id: PackageId,
        path: Path,
        expected_hash: str,
        signature: str | None,
    ) -> SignatureStatus:
        """Run both checks over the file at *path*; return the signature status."""
        expected = normalize_content_hash(expected_hash)
        actual = content_address(sha256_file(path))
        if actual != expected:
            logger.error("Hash mismatch for %s: expected %s, got %s", package_id, expected, actual)
            raise HashMismatch(package_id.name, package_id.version, expected, actual)

        if signature and self._public_key:
            if not verify_data(Path(path).read_bytes(), signature, self._public_key):
                logger.error(
                    "Signature for %s does not verify under key %s",
                    package_id, key_fingerprint(self._public_key),
                )
                raise SignatureInvalid(
                    f"Signature for {package_id} does not verify against the trusted key",
                    package=package_id.name,
                    version=package_id.version,
                    key_fingerprint=key_fingerprint(self._public_key),
                )
            logger.debug("Verified signature for %s", package_id)
            return SignatureStatus.VERIFIED

        status = SignatureStatus.SIGNED if signature else SignatureStatus.UNSIGNED
        if not self._allow_unsigned:
            reason = (
                "is signed but no trusted public key is configured"
                if signature else "is not signed"
            )
            raise UnsignedContent(
                f"{package_id} {reason} and unsigned content is not allowed",
                package=package_id.name,
                version=package_id.version,
                signature_status=status.value,
            )
        logger.debug("Accepting %s on content hash alone (%s)", package_id, status.value)
        return status

    def admit_cached(
        self, package_id: PackageId, entry: CacheEntry, signature: str | None
    ) -> SignatureStatus:
        """Signature status of an already cached archive under this policy.

        A verified entry is accepted as is.  Anything else was cached under
        a looser policy, so the file is checked again and must pass here.
        """
        if entry.signature_status is SignatureStatus.VERIFIED or self._allow_unsigned:
            return entry.signature_status
        return self.check_file(package_id, entry.path, entry.content_hash, signature)
