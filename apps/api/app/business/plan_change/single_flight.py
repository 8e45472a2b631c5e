from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from app.business.plan_change.errors import ExecutionInProgressError


class SingleFlight:
    """Non-blocking per-key guard: a second entrant for a busy key is refused, not queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def acquire(self, key: str) -> None:
        with self._lock:
            if key in self._in_flight:
                raise ExecutionInProgressError(
                    "another plan change is already executing for this subscription",
                    details={"subscription_id": key},
                )
            self._in_flight.add(key)

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)


execution_single_flight = SingleFlight()
