"""Trust policy guard — validates signing configuration before any install.

The guard runs once when a ``Modvault`` instance is built and fails hard
(``TrustPolicyError``) if the configuration cannot be trusted.  Other code
does not scatter ``if is_production`` checks; once the guard passes, the
verifier simply applies ``allow_unsigned`` and ``trusted_public_key``.
"""

from __future__ import annotations

import logging

from modvault.config import VaultConfig
from modvault.core.signing import is_valid_public_key, key_fingerprint
from modvault.errors import TrustPolicyError

logger = logging.getLogger(__name__)


def enforce_trust_policy(config: VaultConfig) -> None:
    """Validate the trust configuration.

    Constraints enforced
    --------------------
    1. A configured ``trusted_public_key`` must be a 32-byte hex Ed25519 key
       (any environment).
    2. In production, ``debug`` must be off.
    3. In production, ``allow_unsigned`` must be off.
    4. In production, a trusted public key must be configured.

    Raises
    ------
    TrustPolicyError
        Listing every violated constraint.
    """
    violations: list[str] = []

    if config.trusted_public_key and not is_valid_public_key(config.trusted_public_key):
        violations.append(
            "trusted_public_key is not a 64-character hex Ed25519 public key."
        )

    if config.is_production:
        if config.debug:
            violations.append(
                "debug=True is not allowed in production. Set MODVAULT_DEBUG=false."
            )
        if config.allow_unsigned:
            violations.append(
                "allow_unsigned=True is not allowed in production. "
                "Set MODVAULT_ALLOW_UNSIGNED=false."
            )
        if not config.trusted_public_key:
            violations.append(
                "trusted_public_key must be configured in production. "
                "Set MODVAULT_TRUSTED_PUBLIC_KEY."
            )

    if violations:
        msg = (
            f"Trust policy violated ({len(violations)} issue(s)):\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise TrustPolicyError(msg, violations=violations)

    if config.allow_unsigned:
        logger.warning(
            "Unsigned packages are accepted (allow_unsigned=True); "
            "only content hashes protect installs."
        )
    logger.debug(
        "Trust policy OK (environment=%s, key=%s)",
        config.environment,
        key_fingerprint(config.trusted_public_key) or "<none>",
    )
