"""
Round scheduler: fan out every probe, wait for all of them, publish one snapshot.

A round walks IDLE -> DISPATCHING -> AWAITING -> PUBLISHING -> IDLE. Rounds
never overlap; a round only ends once its slowest probe hits its own deadline,
so the scheduler adds no timeout of its own.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from probes.models import ProbeResult, ProbeTarget, metric_key

from .collector import StatsCollector

logger = logging.getLogger(__name__)

IDLE = "idle"
DISPATCHING = "dispatching"
AWAITING = "awaiting"
PUBLISHING = "publishing"

_FAILURE_MESSAGES = {
    "resolve": "error performing lookup",
    "ping": "error performing ping",
}


class Prober(Protocol):
    kind: str

    def probe(self, target: ProbeTarget) -> ProbeResult: ...


class Publisher(Protocol):
    def publish(self, snapshot: Dict[str, float]) -> None: ...


@dataclass(frozen=True)
class ProbeJob:
    """One configured probe: which prober to run against which target."""
    prober: Prober
    target: ProbeTarget

    @property
    def key(self) -> str:
        return metric_key(self.prober.kind, self.target.name)


# -----------------------------
# Ticker
# -----------------------------

class Ticker:
    """
    Fixed-period ticks on the grid start + k * interval.

    Like a one-slot tick channel: if a round overruns, the first missed tick
    is still pending and releases the next round immediately; any further
    missed ticks are dropped rather than replayed.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self._clock = clock
        self._sleep = sleep
        self._start = clock()
        self._next = 1
        self.dropped = 0

    def wait(self, stop_event: Optional[threading.Event] = None) -> bool:
        """Block until the next tick; False if stop_event fired first."""
        now = self._clock()
        due = self._start + self._next * self.interval

        if now < due:
            if self._pause(due - now, stop_event):
                return False
            self._next += 1
            return True

        latest = max(self._next, int(math.floor((now - self._start) / self.interval)))
        self.dropped += latest - self._next
        self._next = latest + 1
        return not (stop_event is not None and stop_event.is_set())

    def _pause(self, delay: float, stop_event: Optional[threading.Event]) -> bool:
        if self._sleep is not None:
            self._sleep(delay)
            return stop_event is not None and stop_event.is_set()
        if stop_event is not None:
            return stop_event.wait(delay)
        time.sleep(delay)
        return False


# -----------------------------
# Scheduler
# -----------------------------

class CycleScheduler:
    def __init__(
        self,
        jobs: Sequence[ProbeJob],
        publisher: Publisher,
        interval: float = 5.0,
        ticker_factory: Callable[[float], Ticker] = Ticker,
    ) -> None:
        self.jobs: List[ProbeJob] = list(jobs)
        if not self.jobs:
            raise ValueError("at least one probe job is required")
        keys = [j.key for j in self.jobs]
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate probe keys: {sorted(keys)}")

        self.publisher = publisher
        self.interval = float(interval)
        self._ticker_factory = ticker_factory
        self.state = IDLE
        self.rounds = 0

    @property
    def keys(self) -> List[str]:
        return [j.key for j in self.jobs]

    # ----------------------------
    # Public entrypoints
    # ----------------------------

    def run_round(self) -> Dict[str, float]:
        """Run every probe once, in parallel, and publish the snapshot."""
        collector = StatsCollector(capacity=len(self.jobs))

        self.state = DISPATCHING
        with ThreadPoolExecutor(max_workers=len(self.jobs), thread_name_prefix="probe") as ex:
            futs = {ex.submit(self._run_job, job, collector): job for job in self.jobs}
            self.state = AWAITING
            for f in as_completed(futs):
                job = futs[f]
                try:
                    f.result()
                except Exception:
                    logger.exception(
                        "probe task crashed",
                        extra={"fields": {"key": job.key, "addr": job.target.address}},
                    )

        self.state = PUBLISHING
        snapshot = collector.snapshot()
        self._publish(snapshot)

        self.state = IDLE
        self.rounds += 1
        return snapshot

    def run_forever(
        self,
        stop_event: Optional[threading.Event] = None,
        max_rounds: Optional[int] = None,
    ) -> int:
        """Drive rounds until stopped; returns the number of rounds run."""
        ticker = self._ticker_factory(self.interval)
        started = self.rounds

        while not (stop_event is not None and stop_event.is_set()):
            self.run_round()
            if max_rounds is not None and self.rounds - started >= max_rounds:
                break
            if not ticker.wait(stop_event):
                break

        return self.rounds - started

    # ----------------------------
    # Helpers
    # ----------------------------

    def _run_job(self, job: ProbeJob, collector: StatsCollector) -> ProbeResult:
        result = job.prober.probe(job.target)
        if result.ok:
            collector.record(result)
            return result

        detail = result.to_dict()
        fields: Dict[str, Any] = {
            "key": detail["key"],
            "error": detail["error"],
            "elapsed_ms": detail["elapsed_ms"],
            "host": job.target.name,
            "addr": job.target.address,
        }
        logger.error(_FAILURE_MESSAGES[job.prober.kind], extra={"fields": fields})
        return result

    def _publish(self, snapshot: Dict[str, float]) -> None:
        try:
            self.publisher.publish(snapshot)
        except Exception:
            logger.exception("unable to publish stats")
