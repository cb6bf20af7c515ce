"""
Single-shot network probes.

Each prober times exactly one operation against one target and returns a
ProbeResult; none of them retry or touch shared state.

Public entrypoints: DNSProber, ICMPProber
"""

from .models import PING, RESOLVE, ProbeResult, ProbeTarget, metric_key
from .ping import ICMPProber, probe_icmp
from .resolve import DNSProber, probe_dns

__all__ = [
    "DNSProber",
    "ICMPProber",
    "PING",
    "RESOLVE",
    "ProbeResult",
    "ProbeTarget",
    "metric_key",
    "probe_dns",
    "probe_icmp",
]
