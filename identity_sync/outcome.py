"""
Counters and timings collected during a single synchronization run.
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, Optional


class SyncStatus(IntEnum):
    """Result of reconciling one user."""
    CREATED = 0
    UPDATED = 1
    FAILED = -1


class RunOutcome:
    """
    Aggregate result of a synchronization run.

    Created at the start of a run, mutated while users are reconciled and
    reported once at the end. All mutation goes through the lock.
    """

    def __init__(self):
        self.added = 0
        self.updated = 0
        self.failed = 0
        self.directory_seconds = 0.0
        self.store_seconds = 0.0
        self.started_at = datetime.now()
        self.elapsed_seconds = 0.0

        self._start = time.monotonic()
        self._lock = threading.Lock()

    def record(self, status: SyncStatus) -> None:
        """Count the outcome of one user."""
        with self._lock:
            if status == SyncStatus.CREATED:
                self.added += 1
            elif status == SyncStatus.UPDATED:
                self.updated += 1
            else:
                self.failed += 1

    def add_directory_time(self, seconds: float) -> None:
        with self._lock:
            self.directory_seconds += seconds

    def add_store_time(self, seconds: float) -> None:
        with self._lock:
            self.store_seconds += seconds

    @contextmanager
    def timed(self, accumulator: str):
        """Add the duration of the with-block to 'directory' or 'store' time."""
        start = time.monotonic()
        try:
            yield
        finally:
            elapsed = time.monotonic() - start
            if accumulator == 'directory':
                self.add_directory_time(elapsed)
            elif accumulator == 'store':
                self.add_store_time(elapsed)
            else:
                raise ValueError(f"Unknown timing accumulator: {accumulator}")

    def elapsed(self) -> float:
        """Seconds since the run started."""
        return time.monotonic() - self._start

    def finish(self, end_time: Optional[float] = None) -> float:
        self.elapsed_seconds = (end_time if end_time is not None else time.monotonic()) - self._start
        return self.elapsed_seconds

    def as_dict(self) -> Dict[str, Any]:
        return {
            'users_added': self.added,
            'users_updated': self.updated,
            'users_failed': self.failed,
            'directory_seconds': self.directory_seconds,
            'store_seconds': self.store_seconds,
            'start_time': self.started_at,
            'runtime_seconds': self.elapsed_seconds,
        }
