"""Canonical hashing helpers for content addressing and lockfile stability.

Content hashes are written as ``sha256:<hex>`` everywhere they are persisted
or compared.  Registry metadata may omit the prefix; ``normalize_content_hash``
is the single place that reconciles the two spellings.
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path
from typing import Any

HASH_ALGORITHM = "sha256"
_CHUNK_SIZE = 1024 * 1024
_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact, ASCII, UTF-8."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Stream a file through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def content_address(digest: str) -> str:
    """Format a hex digest as ``sha256:<hex>``."""
    return f"{HASH_ALGORITHM}:{digest}"


def normalize_content_hash(value: str) -> str:
    """Return ``sha256:<lowercase hex>`` for a prefixed or bare digest.

    Raises ``ValueError`` for other algorithms or malformed digests.
    """
    raw = value.strip()
    algorithm, sep, digest = raw.partition(":")
    if not sep:
        algorithm, digest = HASH_ALGORITHM, raw
    digest = digest.lower()
    if algorithm.lower() != HASH_ALGORITHM:
        raise ValueError(f"Unsupported hash algorithm: {algorithm!r}")
    if not _HEX_DIGEST.match(digest):
        raise ValueError(f"Malformed {HASH_ALGORITHM} digest: {value!r}")
    return content_address(digest)


def digest_of(content_hash: str) -> str:
    """Strip the algorithm prefix from a normalized content hash."""
    return normalize_content_hash(content_hash).split(":", 1)[1]


def manifest_hash(dependencies: dict[str, str], name: str = "", version: str = "") -> str:
    """Hash of the parts of a manifest that influence resolution.

    Used to decide whether an existing lockfile still describes the manifest.
    """
    payload = {"name": name, "version": version, "dependencies": dependencies}
    return content_address(sha256_hex(canonical_json_bytes(payload)))
