from __future__ import annotations

import contextlib
import ipaddress
import socket
import struct
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .models import PING, ProbeResult, ProbeTarget, metric_key
from .targets import InvalidAddress, InvalidTarget, require_ip

ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8

_ICMP_HEADER = struct.Struct("!BBHHH")


# -----------------------------
# Wire format
# -----------------------------

@dataclass(frozen=True)
class IcmpPacket:
    type: int
    code: int
    checksum: int
    id: int
    sequence: int
    data: bytes = b""


def icmp_checksum(data: bytes) -> int:
    """RFC 1071 internet checksum."""
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack("!%dH" % (len(data) // 2), data))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return (~total) & 0xFFFF


def build_echo_request(identifier: int, sequence: int, payload: bytes) -> bytes:
    header = _ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, 0, identifier, sequence)
    csum = icmp_checksum(header + payload)
    return _ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, csum, identifier, sequence) + payload


def parse_ipv4_icmp(pkt: bytes) -> Tuple[str, IcmpPacket]:
    """
    Split a raw-socket datagram into (source address, ICMP message).

    IPv4 raw sockets hand back the IP header too, so the ICMP message starts
    at IHL * 4. Raises ValueError on anything too short to hold both headers.
    """
    if len(pkt) < 20:
        raise ValueError("Packet shorter than minimum IP header length (20 bytes).")
    ihl = (pkt[0] & 0x0F) * 4
    if pkt[0] >> 4 != 4 or ihl < 20:
        raise ValueError("Not an IPv4 packet.")
    if len(pkt) < ihl + _ICMP_HEADER.size:
        raise ValueError("Packet shorter than IP header + ICMP header (IHL + 8 bytes).")

    src = socket.inet_ntoa(pkt[12:16])
    t, c, csum, ident, seq = _ICMP_HEADER.unpack(pkt[ihl : ihl + _ICMP_HEADER.size])
    return src, IcmpPacket(t, c, csum, ident, seq, pkt[ihl + _ICMP_HEADER.size :])


# -----------------------------
# Prober
# -----------------------------

class ICMPProber:
    """
    Send one ICMP Echo Request over a raw socket and time the reply.

    Needs CAP_NET_RAW (or root); that is the deployment's job, a permission
    error is just a failed probe here.

    With validate_reply (the default) only an Echo Reply carrying our
    identifier and sequence from the probed address ends the wait; anything
    else on the socket is discarded and reading resumes until the deadline.
    With validate_reply=False the first datagram received is taken as the
    reply, which is cheaper but miscounts when other pingers share the host.
    """

    kind = PING

    def __init__(
        self,
        timeout: float = 1.0,
        identifier: int = 1,
        sequence: int = 1,
        payload: bytes = b"foo bar",
        validate_reply: bool = True,
        socket_factory: Optional[Callable[..., socket.socket]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.timeout = float(timeout)
        self.identifier = int(identifier) & 0xFFFF
        self.sequence = int(sequence) & 0xFFFF
        self.payload = bytes(payload)
        self.validate_reply = bool(validate_reply)
        self._socket_factory = socket_factory or socket.socket
        self._clock = clock

    def probe(self, target: ProbeTarget) -> ProbeResult:
        out = ProbeResult(key=metric_key(self.kind, target.name))
        out.meta = {"target": target.name, "addr": target.address, "discarded": 0}

        try:
            ip = self._require_ipv4(target.address)
        except InvalidTarget as e:
            out.error = str(e)
            return out

        packet = build_echo_request(self.identifier, self.sequence, self.payload)

        try:
            sock = self._listen()
        except OSError as e:
            out.error = f"listen: {type(e).__name__}: {e}"
            return out

        with contextlib.closing(sock):
            started = self._clock()
            deadline = started + self.timeout

            try:
                sock.settimeout(self.timeout)
                sock.sendto(packet, (ip, 0))
            except OSError as e:
                out.elapsed = self._clock() - started
                out.error = f"send: {type(e).__name__}: {e}"
                return out

            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    out.elapsed = self.timeout
                    out.error = "TIMEOUT"
                    return out

                try:
                    sock.settimeout(remaining)
                    pkt, _ = sock.recvfrom(1500)
                except socket.timeout:
                    out.elapsed = self.timeout
                    out.error = "TIMEOUT"
                    return out
                except OSError as e:
                    out.elapsed = self._clock() - started
                    out.error = f"read: {type(e).__name__}: {e}"
                    return out
                received_at = self._clock()

                if not self.validate_reply or self._matches(ip, pkt):
                    # A reply read after the deadline is still a timeout
                    if received_at > deadline:
                        out.elapsed = self.timeout
                        out.error = "TIMEOUT"
                        return out
                    out.elapsed = received_at - started
                    out.ok = True
                    return out
                out.meta["discarded"] += 1

    # ----------------------------
    # Helpers
    # ----------------------------

    def _listen(self) -> socket.socket:
        sock = self._socket_factory(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        try:
            sock.bind(("0.0.0.0", 0))
        except OSError:
            sock.close()
            raise
        return sock

    def _matches(self, ip: str, pkt: bytes) -> bool:
        try:
            src, msg = parse_ipv4_icmp(pkt)
        except ValueError:
            return False
        return (
            msg.type == ICMP_ECHO_REPLY
            and msg.code == 0
            and msg.id == self.identifier
            and msg.sequence == self.sequence
            and src == ip
        )

    @staticmethod
    def _require_ipv4(raw: str) -> str:
        ip = require_ip(raw)
        if ipaddress.ip_address(ip).version != 4:
            raise InvalidAddress(f"ICMP probes need an IPv4 address, got {raw!r}")
        return ip


def probe_icmp(name: str, address: str, prober: Optional[ICMPProber] = None) -> ProbeResult:
    """Convenience wrapper: ping one host with a default ICMPProber."""
    return (prober or ICMPProber()).probe(ProbeTarget(name, address))
