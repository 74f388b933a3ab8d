"""
Background vacuum.

Periodically sweeps versions that no active or future transaction can
observe: versions of rolled-back transactions and versions deleted by
a commit at or below the oldest active transaction's start sequence.
"""

import threading
from typing import Optional

from verso.observability.logging import get_logger
from verso.storage.versions import VersionStore
from verso.transaction.coordinator import TransactionCoordinator


class VacuumWorker:
    """
    Daemon thread running VersionStore.vacuum() when enough dead versions pile up.

    Thread Safety: start()/stop() are meant for the owning Database only.
    """

    __slots__ = ("_store", "_coordinator", "_interval", "_threshold", "_stop", "_thread", "_log")

    def __init__(
        self,
        store: VersionStore,
        coordinator: TransactionCoordinator,
        interval_seconds: float = 1.0,
        threshold: int = 1000,
    ) -> None:
        """
        Initialize the worker.

        Args:
            store: Store to sweep
            coordinator: Source of the vacuum horizon
            interval_seconds: Sleep between checks
            threshold: Dead versions required before a sweep runs
        """
        self._store = store
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._threshold = threshold
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._log = get_logger(__name__)

    def run_once(self) -> int:
        """Sweep now regardless of the threshold."""
        return self._store.vacuum(self._coordinator.vacuum_horizon())

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="verso-vacuum", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            if self._store.dead_version_count < self._threshold:
                continue
            try:
                self.run_once()
            except Exception:
                # Keep the worker alive; the next interval retries
                self._log.exception("vacuum_failed")
