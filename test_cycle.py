# test_cycle.py
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

import dns.exception
import dns.message
import dns.query
import dns.rrset
import pytest

from cycle.collector import CollectorFull, StatsCollector
from cycle.scheduler import IDLE, CycleScheduler, ProbeJob, Ticker
from probes.models import PING, RESOLVE, ProbeResult, ProbeTarget, metric_key
from probes.ping import ICMPProber
from probes.resolve import DNSProber

KNOWN_KEYS = {"resolve.local.time", "resolve.google.time", "ping.gateway.time", "ping.google.time"}


# ----------------------------
# Fakes
# ----------------------------
class FakeProber:
    """
    Prober that answers from a table instead of the network.

    outcomes maps target name -> elapsed ms (success) or None (failure).
    Names not in the table succeed with default_ms.
    """

    def __init__(
        self,
        kind: str,
        outcomes: Optional[Dict[str, Optional[float]]] = None,
        default_ms: float = 1.0,
        barrier: Optional[threading.Barrier] = None,
        raises: Optional[Exception] = None,
    ):
        self.kind = kind
        self.outcomes = outcomes or {}
        self.default_ms = default_ms
        self.barrier = barrier
        self.raises = raises
        self.calls = 0
        self._lock = threading.Lock()

    def probe(self, target: ProbeTarget) -> ProbeResult:
        with self._lock:
            self.calls += 1
        if self.barrier is not None:
            self.barrier.wait()
        if self.raises is not None:
            raise self.raises
        ms = self.outcomes.get(target.name, self.default_ms)
        res = ProbeResult(key=metric_key(self.kind, target.name))
        if ms is None:
            res.error = "TIMEOUT"
            return res
        res.ok = True
        res.elapsed = ms / 1000.0
        return res


class ListPublisher:
    def __init__(self):
        self.snapshots: List[Dict[str, float]] = []

    def publish(self, snapshot):
        self.snapshots.append(snapshot)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now
        self.slept: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, d: float) -> None:
        self.slept.append(d)
        self.now += d


def four_jobs(resolve: FakeProber, ping: FakeProber) -> List[ProbeJob]:
    return [
        ProbeJob(resolve, ProbeTarget("local", "127.0.0.53:53")),
        ProbeJob(resolve, ProbeTarget("google", "8.8.8.8:53")),
        ProbeJob(ping, ProbeTarget("gateway", "192.168.1.1")),
        ProbeJob(ping, ProbeTarget("google", "8.8.8.8")),
    ]


# ----------------------------
# Stats collector
# ----------------------------
def test_collector_records_only_successes():
    c = StatsCollector()
    assert c.record(ProbeResult(key="ping.google.time", elapsed=0.012, ok=True))
    assert not c.record(ProbeResult(key="ping.gateway.time", elapsed=1.0, ok=False, error="TIMEOUT"))
    assert c.snapshot() == {"ping.google.time": pytest.approx(12.0)}


def test_collector_snapshot_is_a_copy():
    c = StatsCollector()
    c.set("a", 1)
    snap = c.snapshot()
    snap["b"] = 2.0
    assert c.snapshot() == {"a": 1.0}


def test_collector_refuses_more_keys_than_capacity():
    c = StatsCollector(capacity=2)
    c.set("a", 1.0)
    c.set("b", 2.0)
    c.set("a", 3.0)  # overwrite is fine
    with pytest.raises(CollectorFull):
        c.set("c", 4.0)
    assert len(c) == 2


def test_collector_survives_heavy_contention():
    c = StatsCollector()
    n_threads, per_thread = 16, 500

    def writer(tid: int):
        for i in range(per_thread):
            c.set(f"t{tid}.k{i}", float(i))

    threads = [threading.Thread(target=writer, args=(t,)) for t in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = c.snapshot()
    assert len(snap) == n_threads * per_thread
    assert snap["t7.k499"] == 499.0


# ----------------------------
# Scheduler: one round
# ----------------------------
def test_round_publishes_all_four_keys():
    pub = ListPublisher()
    s = CycleScheduler(
        four_jobs(FakeProber(RESOLVE, {"local": 2.0, "google": 15.0}), FakeProber(PING, {"gateway": 1.5, "google": 9.0})),
        pub,
    )
    snap = s.run_round()

    assert snap == {
        "resolve.local.time": pytest.approx(2.0),
        "resolve.google.time": pytest.approx(15.0),
        "ping.gateway.time": pytest.approx(1.5),
        "ping.google.time": pytest.approx(9.0),
    }
    assert pub.snapshots == [snap]
    assert s.state == IDLE
    assert s.rounds == 1


def test_round_runs_probes_in_parallel():
    # Four parties must meet at the barrier; sequential execution would break it.
    barrier = threading.Barrier(4, timeout=5)
    s = CycleScheduler(
        four_jobs(FakeProber(RESOLVE, barrier=barrier), FakeProber(PING, barrier=barrier)),
        ListPublisher(),
    )
    assert set(s.run_round()) == KNOWN_KEYS


def test_failed_probe_key_is_absent_not_null():
    """ICMP to 8.8.8.8 gets no reply -> ping.google.time missing, round completes."""
    pub = ListPublisher()
    s = CycleScheduler(four_jobs(FakeProber(RESOLVE), FakeProber(PING, {"google": None})), pub)
    snap = s.run_round()

    assert "ping.google.time" not in snap
    assert set(snap) == KNOWN_KEYS - {"ping.google.time"}
    assert all(v is not None for v in snap.values())


def test_failed_probe_is_logged_with_context(caplog):
    s = CycleScheduler(four_jobs(FakeProber(RESOLVE, {"local": None}), FakeProber(PING)), ListPublisher())
    with caplog.at_level("ERROR", logger="cycle.scheduler"):
        s.run_round()

    recs = [r for r in caplog.records if r.getMessage() == "error performing lookup"]
    assert len(recs) == 1
    assert recs[0].fields == {
        "key": "resolve.local.time",
        "error": "TIMEOUT",
        "elapsed_ms": 0.0,
        "host": "local",
        "addr": "127.0.0.53:53",
    }


def test_failed_ping_uses_ping_message(caplog):
    s = CycleScheduler(four_jobs(FakeProber(RESOLVE), FakeProber(PING, {"gateway": None})), ListPublisher())
    with caplog.at_level("ERROR", logger="cycle.scheduler"):
        s.run_round()

    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.getMessage() for r in errors] == ["error performing ping"]
    assert errors[0].fields["key"] == "ping.gateway.time"


def test_crashing_probe_task_does_not_break_the_round(caplog):
    s = CycleScheduler(
        four_jobs(FakeProber(RESOLVE), FakeProber(PING, raises=RuntimeError("boom"))),
        ListPublisher(),
    )
    with caplog.at_level("ERROR", logger="cycle.scheduler"):
        snap = s.run_round()

    assert set(snap) == {"resolve.local.time", "resolve.google.time"}
    assert sum(1 for r in caplog.records if r.getMessage() == "probe task crashed") == 2


def test_publish_failure_is_logged_and_swallowed(caplog):
    class Broken:
        def publish(self, snapshot):
            raise ConnectionError("sink down")

    s = CycleScheduler(four_jobs(FakeProber(RESOLVE), FakeProber(PING)), Broken())
    with caplog.at_level("ERROR", logger="cycle.scheduler"):
        snap = s.run_round()

    assert set(snap) == KNOWN_KEYS
    assert any(r.getMessage() == "unable to publish stats" for r in caplog.records)


def test_snapshot_only_ever_holds_known_keys_across_mixed_outcomes():
    pub = ListPublisher()
    outcomes = [
        ({"local": None}, {}),
        ({}, {"gateway": None, "google": None}),
        ({"local": None, "google": None}, {"gateway": None, "google": None}),
        ({}, {}),
    ]
    for r_out, p_out in outcomes:
        CycleScheduler(four_jobs(FakeProber(RESOLVE, r_out), FakeProber(PING, p_out)), pub).run_round()

    for snap in pub.snapshots:
        assert set(snap) <= KNOWN_KEYS
        assert all(v >= 0 for v in snap.values())
    assert pub.snapshots[2] == {}


def test_two_healthy_rounds_have_same_key_set():
    s = CycleScheduler(four_jobs(FakeProber(RESOLVE), FakeProber(PING)), ListPublisher())
    assert set(s.run_round()) == set(s.run_round()) == KNOWN_KEYS


def test_stress_hundred_rounds_never_lose_a_write():
    resolve = FakeProber(RESOLVE, {"local": 2.0, "google": 3.0}, default_ms=0.0)
    ping = FakeProber(PING, {"gateway": 4.0, "google": 5.0}, default_ms=0.0)
    pub = ListPublisher()
    s = CycleScheduler(four_jobs(resolve, ping), pub)

    for _ in range(100):
        s.run_round()

    assert len(pub.snapshots) == 100
    for snap in pub.snapshots:
        assert snap == {
            "resolve.local.time": pytest.approx(2.0),
            "resolve.google.time": pytest.approx(3.0),
            "ping.gateway.time": pytest.approx(4.0),
            "ping.google.time": pytest.approx(5.0),
        }
    assert resolve.calls == ping.calls == 200


def test_scheduler_rejects_empty_or_duplicate_jobs():
    with pytest.raises(ValueError):
        CycleScheduler([], ListPublisher())
    p = FakeProber(PING)
    with pytest.raises(ValueError):
        CycleScheduler(
            [ProbeJob(p, ProbeTarget("google", "8.8.8.8")), ProbeJob(p, ProbeTarget("google", "8.8.4.4"))],
            ListPublisher(),
        )


# ----------------------------
# Scheduler with the real probers (network faked at the edges)
# ----------------------------
def test_round_with_real_probers_and_faked_network(monkeypatch):
    """Local resolver replies in 2 ms, public resolver times out, nobody answers pings."""

    def fake_udp(q, where, port=53, timeout=None, **kw):
        if where == "8.8.8.8":
            raise dns.exception.Timeout()
        r = dns.message.make_response(q)
        r.answer.append(dns.rrset.from_text("google.com.", 300, "IN", "A", "142.250.72.14"))
        return r

    monkeypatch.setattr(dns.query, "udp", fake_udp)

    class SilentSocket:
        def bind(self, addr): pass
        def settimeout(self, t): pass
        def sendto(self, data, addr): return len(data)
        def recvfrom(self, n): raise TimeoutError("timed out")
        def close(self): pass

    local = DNSProber(clock=iter([0.0, 0.002]).__next__)
    public = DNSProber()
    ping = ICMPProber(socket_factory=lambda *a: SilentSocket())
    jobs = [
        ProbeJob(local, ProbeTarget("local", "127.0.0.1:53")),
        ProbeJob(public, ProbeTarget("google", "8.8.8.8:53")),
        ProbeJob(ping, ProbeTarget("gateway", "192.168.1.1")),
        ProbeJob(ping, ProbeTarget("google", "8.8.8.8")),
    ]
    snap = CycleScheduler(jobs, ListPublisher()).run_round()
    assert snap == {"resolve.local.time": pytest.approx(2.0)}


# ----------------------------
# Ticker
# ----------------------------
def test_ticker_sleeps_until_next_grid_point():
    clk = FakeClock(0.0)
    t = Ticker(5.0, clock=clk, sleep=clk.sleep)

    clk.now = 1.0  # round took 1s
    assert t.wait()
    assert clk.slept == [4.0]

    clk.now += 0.5
    assert t.wait()
    assert clk.slept == [4.0, 4.5]
    assert clk.now == 10.0
    assert t.dropped == 0


def test_ticker_overrun_fires_once_then_drops_missed_ticks():
    clk = FakeClock(0.0)
    t = Ticker(5.0, clock=clk, sleep=clk.sleep)

    clk.now = 12.0  # round overran the ticks at 5 and 10
    assert t.wait()
    assert clk.slept == []  # pending tick released immediately
    assert t.dropped == 1  # the tick at 10 is gone, not replayed

    clk.now = 13.0
    assert t.wait()
    assert clk.slept == [2.0]  # next tick on the grid is 15
    assert clk.now == 15.0


def test_ticker_wait_honors_stop_event():
    stop = threading.Event()
    stop.set()
    t = Ticker(60.0)
    assert t.wait(stop) is False


def test_ticker_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        Ticker(0)


# ----------------------------
# Scheduler loop
# ----------------------------
def test_run_forever_first_round_immediately_then_on_ticks():
    clk = FakeClock(100.0)
    pub = ListPublisher()
    s = CycleScheduler(
        four_jobs(FakeProber(RESOLVE), FakeProber(PING)),
        pub,
        interval=5.0,
        ticker_factory=lambda interval: Ticker(interval, clock=clk, sleep=clk.sleep),
    )
    assert s.run_forever(max_rounds=3) == 3
    assert len(pub.snapshots) == 3
    assert clk.slept == [5.0, 5.0]


def test_run_forever_keeps_going_after_publish_failures():
    clk = FakeClock()
    calls = []

    class Flaky:
        def publish(self, snapshot):
            calls.append(snapshot)
            raise RuntimeError("sink down")

    s = CycleScheduler(
        four_jobs(FakeProber(RESOLVE), FakeProber(PING)),
        Flaky(),
        ticker_factory=lambda interval: Ticker(interval, clock=clk, sleep=clk.sleep),
    )
    assert s.run_forever(max_rounds=4) == 4
    assert len(calls) == 4


def test_run_forever_stops_on_event():
    stop = threading.Event()

    class StopAfterTwo(ListPublisher):
        def publish(self, snapshot):
            super().publish(snapshot)
            if len(self.snapshots) == 2:
                stop.set()

    pub = StopAfterTwo()
    s = CycleScheduler(four_jobs(FakeProber(RESOLVE), FakeProber(PING)), pub, interval=0.01)
    assert s.run_forever(stop_event=stop) == 2
    assert len(pub.snapshots) == 2
