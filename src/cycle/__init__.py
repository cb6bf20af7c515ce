"""
Probe-and-aggregate cycle: the per-round collector and the round scheduler.

Public entrypoint: CycleScheduler
"""

from .collector import CollectorFull, StatsCollector
from .scheduler import CycleScheduler, ProbeJob, Ticker

__all__ = ["CollectorFull", "CycleScheduler", "ProbeJob", "StatsCollector", "Ticker"]
