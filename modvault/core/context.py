"""Per-run context threaded through resolution and installation.

Holds what one ``resolve``/``install`` call shares between components: the
registry, an in-memory metadata cache, and the cancellation flag.  A new
context is created for each run and discarded afterwards, so metadata never
leaks between runs.
"""

from __future__ import annotations

import logging
import threading

from modvault.core.registry_client import PackageRegistry
from modvault.errors import InstallCancelled, PackageNotFound
from modvault.models.registry import RegistryEntry

logger = logging.getLogger(__name__)


class RunContext:
    """Scoped registry view plus cancellation for one run."""

    def __init__(
        self,
        registry: PackageRegistry,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.registry = registry
        self.cancel_event = cancel_event or threading.Event()
        self._entries: dict[str, RegistryEntry | PackageNotFound] = {}
        self._lock = threading.Lock()
        self.queries = 0

    def __enter__(self) -> RunContext:
        return self

    def __exit__(self, *exc: object) -> None:
        with self._lock:
            self._entries.clear()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def list_versions(self, name: str) -> RegistryEntry:
        """Registry entry for *name*, queried at most once per run.

        A ``PackageNotFound`` answer is remembered too and re-raised.
        """
        with self._lock:
            cached = self._entries.get(name)
        if cached is None:
            self.check_cancelled(f"metadata query for '{name}'")
            try:
                cached = self.registry.list_versions(name, cancel_event=self.cancel_event)
            except PackageNotFound as exc:
                cached = exc
            with self._lock:
                self._entries.setdefault(name, cached)
                self.queries += 1
        else:
            logger.debug("Metadata cache hit for %s", name)
        if isinstance(cached, PackageNotFound):
            raise cached
        return cached

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self, what: str = "install") -> None:
        if self.cancel_event.is_set():
            raise InstallCancelled(f"Cancelled: {what}", operation=what)
