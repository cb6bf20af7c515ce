from __future__ import annotations

import threading
from typing import Dict, Optional

from probes.models import ProbeResult


class CollectorFull(RuntimeError):
    """Raised when a round tries to record more keys than it has probes."""


class StatsCollector:
    """
    Per-round accumulator of metric key -> latency in milliseconds.

    Probe tasks write concurrently through set()/record(); the scheduler reads
    snapshot() once, after every task of the round has finished. One instance
    per round, never reused.
    """

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = capacity
        self._values: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: float) -> None:
        with self._lock:
            if (
                self.capacity is not None
                and key not in self._values
                and len(self._values) >= self.capacity
            ):
                raise CollectorFull(f"Round already holds {self.capacity} entries; refusing {key!r}")
            self._values[key] = float(value)

    def record(self, result: ProbeResult) -> bool:
        """Store a successful result; failed ones leave no key behind."""
        if not result.ok:
            return False
        self.set(result.key, result.elapsed_ms)
        return True

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._values)

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
