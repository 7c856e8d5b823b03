"""modvault: resolve, fetch, verify and install binary module packages.

  - Backtracking semantic-version resolution to one version per package
  - Registry client over GraphQL with bounded retry and backoff
  - SHA-256 content hashes plus Ed25519 detached signatures (PyNaCl), fail-closed
  - SQLite-backed local store with a content-addressed archive cache
  - Concurrent installs that fetch each content hash once
  - Byte-stable lockfile
"""

__version__ = "0.1.0"
__description__ = "Package manager core for signed binary modules"

from modvault.api import Modvault, install, lookup_installed, resolve, verify_only
from modvault.config import VaultConfig, load_config

__all__ = [
    "Modvault",
    "VaultConfig",
    "load_config",
    "resolve",
    "install",
    "verify_only",
    "lookup_installed",
    "__version__",
]
