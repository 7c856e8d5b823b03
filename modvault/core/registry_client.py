"""Registry client — package metadata over GraphQL, archives over plain HTTP.

Retry policy
------------
Both operations retry transient failures (connection errors, timeouts,
HTTP 429 and 5xx) with exponential backoff, capped at
``retry_max_attempts`` attempts.  Non-transient failures (404, other 4xx,
malformed responses) fail on the first attempt.  Exhausted retries surface
as ``RegistryUnavailable``.  Every request carries a timeout.

Registry response shape::

    {"data": {"package": {"name": "dep-x", "versions": [
        {"version": "1.2.0",
         "distribution": {"downloadUrl": "...", "contentHash": "sha256:...",
                          "signature": "<hex>|null", "format": "tar.gz"},
         "abi": {"kind": "wasi", "interface": "...", "exports": {...}} | null,
         "dependencies": [{"name": "dep-y", "constraint": "^1.0"}]}
    ]}}}
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, BinaryIO, Protocol, TypeVar

import requests
from pydantic import ValidationError

from modvault import __version__
from modvault.config import VaultConfig
from modvault.errors import (
    InstallCancelled,
    MalformedResponse,
    PackageNotFound,
    RegistryError,
    RegistryUnavailable,
)
from modvault.models.package import PackageId
from modvault.models.registry import (
    FetchedArchive,
    RegistryEntry,
    VersionMetadata,
    parse_archive_format,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOWNLOAD_CHUNK_SIZE = 64 * 1024

PACKAGE_VERSIONS_QUERY = """
query GetPackageVersions($name: String!) {
  package: getPackage(name: $name) {
    name
    versions {
      version
      distribution { downloadUrl contentHash signature format }
      abi
      dependencies { name constraint }
    }
  }
}
""".strip()


class PackageRegistry(Protocol):
    """What the resolver and installer need from a registry."""

    def list_versions(
        self, name: str, *, cancel_event: threading.Event | None = None
    ) -> RegistryEntry: ...

    def fetch_archive(
        self,
        package_id: PackageId,
        destination: Path,
        *,
        metadata: VersionMetadata | None = None,
        cancel_event: threading.Event | None = None,
    ) -> FetchedArchive: ...


class _TransientFailure(Exception):
    """Internal marker: this attempt may succeed if retried."""


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def _check_cancel(cancel_event: threading.Event | None, what: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise InstallCancelled(f"Cancelled: {what}", operation=what)


class RegistryClient:
    """Talks to one registry.

    Parameters
    ----------
    config:
        Supplies the endpoint, token, proxy, timeout and retry budget.
    session:
        Optional ``requests.Session``-compatible object.  A new session is
        created (and owned) when omitted.
    sleep:
        Backoff sleep function; overridable so tests do not wait.
    """

    def __init__(
        self,
        config: VaultConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._owns_session = session is None
        self._session = session if session is not None else self._build_session(config)
        self._sleep = sleep

    @staticmethod
    def _build_session(config: VaultConfig) -> requests.Session:
        session = requests.Session()
        session.headers["User-Agent"] = f"modvault/{__version__}"
        if config.proxy_url:
            session.proxies.update({"http": config.proxy_url, "https": config.proxy_url})
        return session

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def list_versions(
        self,
        name: str,
        *,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> RegistryEntry:
        """Return every published version of *name*.

        Raises ``PackageNotFound``, ``MalformedResponse`` or, after retries,
        ``RegistryUnavailable``.  Setting *cancel_event* aborts the backoff
        wait with ``InstallCancelled``.
        """
        payload = self._with_retry(
            f"metadata query for '{name}'",
            lambda: self._post_query({"name": name}, timeout),
            cancel_event=cancel_event,
        )
        entry = self._parse_entry(name, payload)
        logger.debug("Registry lists %d version(s) of %s", len(entry.versions), name)
        return entry

    def _post_query(self, variables: dict[str, Any], timeout: float | None) -> Any:
        try:
            response = self._session.post(
                self._config.graphql_url,
                json={"query": PACKAGE_VERSIONS_QUERY, "variables": variables},
                headers=self._auth_headers(),
                timeout=self._timeout(timeout),
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise _TransientFailure(str(exc)) from exc
        except requests.RequestException as exc:
            raise RegistryError(f"Registry request failed: {exc}") from exc

        self._raise_for_status(response.status_code, variables.get("name", ""))
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse(
                "Registry returned a non-JSON response",
                status_code=response.status_code,
            ) from exc

    def _parse_entry(self, name: str, payload: Any) -> RegistryEntry:
        if not isinstance(payload, dict):
            raise MalformedResponse("Registry response is not a JSON object", package=name)

        errors = payload.get("errors") or []
        if errors:
            messages = [str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors]
            if any("not found" in m.lower() for m in messages):
                raise PackageNotFound(f"Package '{name}' not found", package=name)
            raise MalformedResponse(
                f"Registry reported errors for '{name}': {'; '.join(messages)}",
                package=name,
                errors=messages,
            )

        data = payload.get("data")
        package = data.get("package") if isinstance(data, dict) else None
        if package is None:
            raise PackageNotFound(f"Package '{name}' not found", package=name)

        try:
            versions: dict[str, VersionMetadata] = {}
            for raw in package.get("versions") or []:
                meta = self._parse_version(raw)
                versions[meta.version] = meta
            return RegistryEntry(name=package.get("name", name), versions=versions)
        except (KeyError, TypeError, AttributeError, ValueError, ValidationError) as exc:
            raise MalformedResponse(
                f"Malformed metadata for '{name}': {exc}", package=name
            ) from exc

    @staticmethod
    def _parse_version(raw: dict[str, Any]) -> VersionMetadata:
        dist = raw["distribution"]
        deps_raw = raw.get("dependencies") or []
        if isinstance(deps_raw, dict):
            dependencies = {str(k): str(v) for k, v in deps_raw.items()}
        else:
            dependencies = {d["name"]: d["constraint"] for d in deps_raw}
        return VersionMetadata(
            version=raw["version"],
            download_url=dist["downloadUrl"],
            content_hash=dist["contentHash"],
            signature=dist.get("signature"),
            format=parse_archive_format(dist.get("format")),
            abi=raw.get("abi"),
            dependencies=dependencies,
        )

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def fetch_archive(
        self,
        package_id: PackageId,
        destination: Path,
        *,
        metadata: VersionMetadata | None = None,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> FetchedArchive:
        """Download the archive for *package_id* into a temp file under *destination*.

        The returned archive is NOT trusted; pass it to the verifier.  On
        failure no partial file is left behind.
        """
        if metadata is None:
            metadata = self.list_versions(
                package_id.name, cancel_event=cancel_event, timeout=timeout
            ).get(package_id.version)
            if metadata is None:
                raise PackageNotFound(
                    f"Version {package_id} is not published",
                    package=package_id.name,
                    version=package_id.version,
                )

        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        prefix = re.sub(r"[^a-z0-9._-]", "_", package_id.name)

        def attempt() -> tuple[Path, int]:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{prefix}-{package_id.version}-", suffix=".part", dir=destination
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as fh:
                    size = self._download(
                        metadata.download_url, fh, timeout, cancel_event, str(package_id)
                    )
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
            return tmp_path, size

        logger.info("Fetching %s from %s", package_id, metadata.download_url)
        path, size = self._with_retry(
            f"download of {package_id}", attempt, cancel_event=cancel_event
        )
        logger.info("Fetched %s (%d bytes)", package_id, size)
        return FetchedArchive(
            package_id=package_id,
            path=path,
            expected_hash=metadata.content_hash,
            signature=metadata.signature,
            format=metadata.format,
            abi=metadata.abi,
            download_url=metadata.download_url,
            size_bytes=size,
        )

    def _download(
        self,
        url: str,
        fh: BinaryIO,
        timeout: float | None,
        cancel_event: threading.Event | None,
        label: str,
    ) -> int:
        size = 0
        try:
            with self._session.get(
                url,
                stream=True,
                headers=self._auth_headers(),
                timeout=self._timeout(timeout),
            ) as response:
                self._raise_for_status(response.status_code, label)
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    _check_cancel(cancel_event, f"download of {label}")
                    if chunk:
                        fh.write(chunk)
                        size += len(chunk)
        except (
            requests.ConnectionError,
            requests.Timeout,
            requests.exceptions.ChunkedEncodingError,
        ) as exc:
            raise _TransientFailure(str(exc)) from exc
        except requests.RequestException as exc:
            raise RegistryError(f"Download of {label} failed: {exc}", url=url) from exc
        return size

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self._config.request_timeout_seconds

    def _auth_headers(self) -> dict[str, str]:
        if self._config.registry_token:
            return {"Authorization": f"Bearer {self._config.registry_token}"}
        return {}

    @staticmethod
    def _raise_for_status(status: int, target: str) -> None:
        if status < 400:
            return
        if _is_transient_status(status):
            raise _TransientFailure(f"HTTP {status} for {target}")
        if status == 404:
            raise PackageNotFound(f"'{target}' not found (HTTP 404)", target=target)
        raise RegistryError(f"Registry rejected request for '{target}' (HTTP {status})",
                            target=target, status_code=status)

    def _backoff_delay(self, attempt: int) -> float:
        delay = self._config.retry_base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self._config.retry_max_delay_seconds)

    def _with_retry(
        self,
        what: str,
        operation: Callable[[], T],
        *,
        cancel_event: threading.Event | None = None,
    ) -> T:
        attempts = max(1, self._config.retry_max_attempts)
        last_error = ""
        for attempt in range(1, attempts + 1):
            _check_cancel(cancel_event, what)
            try:
                return operation()
            except _TransientFailure as exc:
                last_error = str(exc)
            if attempt == attempts:
                break
            delay = self._backoff_delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                what, attempt, attempts, last_error, delay,
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise InstallCancelled(f"Cancelled: {what}", operation=what)
            else:
                self._sleep(delay)
        raise RegistryUnavailable(
            f"{what} failed after {attempts} attempt(s): {last_error}",
            operation=what,
            attempts=attempts,
            last_error=last_error,
        )
