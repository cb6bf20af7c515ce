import ipaddress
import re
from typing import Tuple

# Invalid probe target base error
class InvalidTarget(ValueError):
    """Base error for malformed probe targets."""

# Invalid IP address
class InvalidAddress(InvalidTarget):
    """Raised when a target address is not a usable IP literal."""

# Target names end up inside metric keys, so they must be a single dot-free label.
_NAME = re.compile(r"^[a-z0-9_-]+$")
def require_name(raw: str) -> str:
    s = (raw or "").strip().lower()
    if not _NAME.match(s):
        raise InvalidTarget(f"Invalid target name {raw!r}")
    return s

# Checks only format, never reachability
def require_ip(raw: str) -> str:
    s = (raw or "").strip()
    try:
        return str(ipaddress.ip_address(s))
    except ValueError as e:
        raise InvalidAddress(f"Invalid IP address {raw!r}") from e

# Split "host:port", "[v6]:port", or a bare host into (ip, port)
def split_host_port(raw: str, default_port: int = 53) -> Tuple[str, int]:
    s = (raw or "").strip()
    host, port = s, default_port

    if s.startswith("["):
        end = s.find("]")
        if end == -1:
            raise InvalidAddress(f"Unterminated IPv6 literal in {raw!r}")
        host = s[1:end]
        rest = s[end + 1 :]
        if rest:
            if not rest.startswith(":"):
                raise InvalidAddress(f"Unexpected text after IPv6 literal in {raw!r}")
            port = _parse_port(rest[1:], raw)
    elif s.count(":") == 1:
        host, p = s.split(":")
        port = _parse_port(p, raw)

    return require_ip(host), port


def _parse_port(p: str, raw: str) -> int:
    if not p.isdigit() or not 0 < int(p) < 65536:
        raise InvalidAddress(f"Invalid port in {raw!r}")
    return int(p)
