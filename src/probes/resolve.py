from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import dns.exception
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype

from .models import RESOLVE, ProbeResult, ProbeTarget, metric_key
from .targets import InvalidTarget, split_host_port


class DNSProber:
    """
    Time a single DNS query against one resolver.

    One UDP question per call, no retries: a missed reading is fine because the
    next round probes again. Any reply that parses counts as success, whatever
    its rcode; the rcode is kept in the result meta for the logs.
    """

    kind = RESOLVE

    def __init__(
        self,
        qname: str = "google.com",
        rdatatype: dns.rdatatype.RdataType = dns.rdatatype.A,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.qname = qname.rstrip(".") + "."
        self.rdatatype = rdatatype
        self.timeout = float(timeout)
        self._clock = clock

    # ----------------------------
    # Public entrypoint
    # ----------------------------

    def probe(self, target: ProbeTarget) -> ProbeResult:
        out = ProbeResult(key=metric_key(self.kind, target.name))
        out.meta = {"target": target.name, "addr": target.address}

        try:
            ip, port = split_host_port(target.address, default_port=53)
        except InvalidTarget as e:
            out.error = str(e)
            return out

        q = dns.message.make_query(self.qname, self.rdatatype)

        started = self._clock()
        try:
            r = dns.query.udp(q, ip, port=port, timeout=self.timeout)
        except dns.exception.Timeout:
            out.elapsed = self._clock() - started
            out.error = "TIMEOUT"
            return out
        except (dns.exception.DNSException, OSError) as e:
            out.elapsed = self._clock() - started
            out.error = f"{type(e).__name__}: {e}"
            return out
        out.elapsed = self._clock() - started
        if out.elapsed > self.timeout:
            out.elapsed = self.timeout
            out.error = "TIMEOUT"
            return out

        out.ok = True
        out.meta.update(self._describe(r))
        return out

    # ----------------------------
    # Helpers
    # ----------------------------

    @staticmethod
    def _describe(msg: dns.message.Message) -> Dict[str, Any]:
        answers = 0
        for rrset in msg.answer:
            answers += len(rrset)
        return {"rcode": dns.rcode.to_text(msg.rcode()), "answers": answers}


def probe_dns(name: str, address: str, prober: Optional[DNSProber] = None) -> ProbeResult:
    """Convenience wrapper: probe one resolver with a default DNSProber."""
    return (prober or DNSProber()).probe(ProbeTarget(name, address))
