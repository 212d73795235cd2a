"""Per-store mutual exclusion for PKI-mutating operations."""

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import ConcurrencyRejected
from .logging_config import LOGGER

_registry_lock = threading.Lock()
_gates: dict[str, "ConcurrencyGate"] = {}


class ConcurrencyGate:
    """Admits at most one mutating operation per PKI store.

    The toolkit's serial counter and lock files are not safe under
    concurrent CLI invocations, so every writer goes through ``hold``.
    Waiting is bounded; callers past the bound get ConcurrencyRejected.
    """

    def __init__(self, store_key: str, wait_seconds: float = 5.0) -> None:
        self.store_key = store_key
        self.wait_seconds = wait_seconds
        self._lock = threading.Lock()
        self._holder: str | None = None

    @classmethod
    def for_store(cls, store_root: Path, wait_seconds: float = 5.0) -> "ConcurrencyGate":
        """Return the gate shared by every caller of the same store path."""
        key = str(store_root.resolve())
        with _registry_lock:
            gate = _gates.get(key)
            if gate is None:
                gate = cls(key, wait_seconds)
                _gates[key] = gate
            return gate

    @property
    def holder(self) -> str | None:
        """Operation currently inside the gate, if any."""
        return self._holder

    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, operation: str, wait_seconds: float | None = None) -> Iterator[None]:
        """Run the block as the only writer of the store.

        Args:
            operation: Label for logs and rejection errors
            wait_seconds: Override of the gate's bounded wait

        Raises:
            ConcurrencyRejected: If the gate stays busy past the wait
        """
        wait = self.wait_seconds if wait_seconds is None else wait_seconds
        started = time.monotonic()
        if not self._lock.acquire(timeout=max(wait, 0.0)):
            LOGGER.warning(
                "Rejected %s: %s busy with %s", operation, self.store_key, self._holder
            )
            raise ConcurrencyRejected(self.store_key, operation, time.monotonic() - started)

        self._holder = operation
        try:
            yield
        finally:
            self._holder = None
            self._lock.release()
