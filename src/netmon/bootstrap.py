"""
One-shot startup lookups for the probe targets that are not hard-coded.

Both lookups honor an explicit override from Settings first. Anything that
goes wrong raises BootstrapError; the caller treats that as fatal because
half of the probe targets would be undefined.
"""

from __future__ import annotations

import ipaddress
import socket
import struct
import subprocess
from typing import Callable, List, Optional, Sequence

import dns.exception
import dns.resolver

from probes.targets import InvalidTarget, require_ip, split_host_port

from .config import GOOGLE_PING_ADDR, NetmonError, Settings

RTF_GATEWAY = 0x0002


class BootstrapError(NetmonError):
    """Raised when a startup probe target cannot be determined."""


# ----------------------------
# Local DNS server
# ----------------------------

def resolve_local_dns(
    settings: Settings,
    resolver_factory: Callable[[], dns.resolver.Resolver] = lambda: dns.resolver.Resolver(configure=True),
) -> str:
    if settings.local_dns_addr:
        try:
            split_host_port(settings.local_dns_addr)
        except InvalidTarget as e:
            raise BootstrapError(f"LOCAL_DNS_ADDR: {e}") from e
        return settings.local_dns_addr

    try:
        resolver = resolver_factory()
    except (dns.exception.DNSException, OSError) as e:
        raise BootstrapError(f"error loading /etc/resolv.conf: {type(e).__name__}: {e}") from e

    servers = [str(ns) for ns in (resolver.nameservers or [])]
    if not servers:
        raise BootstrapError("error loading /etc/resolv.conf: no nameservers configured")

    ns = servers[0]
    try:
        version = ipaddress.ip_address(ns).version
    except ValueError as e:
        raise BootstrapError(f"unusable nameserver {ns!r} in /etc/resolv.conf") from e
    if version == 6:
        return f"[{ns}]:53"
    return f"{ns}:53"


# ----------------------------
# Default gateway
# ----------------------------

def resolve_gateway(
    settings: Settings,
    destination: str = GOOGLE_PING_ADDR,
    run: Optional[Callable[[Sequence[str]], Optional[str]]] = None,
    route_table: str = "/proc/net/route",
) -> str:
    if settings.gateway_ping_addr:
        try:
            return require_ip(settings.gateway_ping_addr)
        except InvalidTarget as e:
            raise BootstrapError(f"GATEWAY_PING_ADDR: {e}") from e

    out = (run or _run)(["ip", "-4", "route", "get", destination])
    gateway = parse_ip_route_get(out) if out else None
    if gateway is None:
        gateway = read_proc_default_gateway(route_table)
    if gateway is None:
        raise BootstrapError(f"unable to get default route towards {destination}")
    return gateway


def parse_ip_route_get(output: str) -> Optional[str]:
    """Pull the next hop out of `ip route get` output ("... via 192.168.1.1 dev ...")."""
    for line in output.splitlines():
        parts: List[str] = line.split()
        if "via" in parts:
            i = parts.index("via")
            if i + 1 < len(parts):
                try:
                    return require_ip(parts[i + 1])
                except InvalidTarget:
                    return None
    return None


def read_proc_default_gateway(path: str = "/proc/net/route") -> Optional[str]:
    """Default IPv4 gateway from the kernel routing table (Linux only)."""
    try:
        with open(path, "r", encoding="ascii") as fh:
            lines = fh.read().splitlines()
    except OSError:
        return None

    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 4 or fields[1] != "00000000":
            continue
        try:
            flags = int(fields[3], 16)
            gw = int(fields[2], 16)
        except ValueError:
            continue
        if flags & RTF_GATEWAY and gw:
            return socket.inet_ntoa(struct.pack("<L", gw))
    return None


def _run(cmd: Sequence[str], timeout_seconds: int = 5) -> Optional[str]:
    try:
        p = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout_seconds)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if p.returncode != 0:
        return None
    return p.stdout or ""
