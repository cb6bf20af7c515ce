from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

GOOGLE_DNS_ADDR = "8.8.8.8:53"
GOOGLE_PING_ADDR = "8.8.8.8"
QUERY_NAME = "google.com"

PING_TIMEOUT = 1.0
DNS_TIMEOUT = 2.0


class NetmonError(Exception):
    """Base error for the netmon service."""


class ConfigError(NetmonError):
    """Raised when an environment setting cannot be used."""


@dataclass(frozen=True)
class Settings:
    local_dns_addr: Optional[str] = None  # None -> derive from /etc/resolv.conf
    gateway_ping_addr: Optional[str] = None  # None -> derive from routing table
    splunk_url: Optional[str] = None
    splunk_token: Optional[str] = None
    sentry_dsn: Optional[str] = None
    log_level: str = "INFO"
    interval: float = 5.0
    health_port: int = 8080

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            local_dns_addr=_opt(env, "LOCAL_DNS_ADDR"),
            gateway_ping_addr=_opt(env, "GATEWAY_PING_ADDR"),
            splunk_url=_opt(env, "SPLUNK_URL"),
            splunk_token=_opt(env, "SPLUNK_TOKEN"),
            sentry_dsn=_opt(env, "SENTRY_DSN"),
            log_level=(_opt(env, "LOG_LEVEL") or "INFO").upper(),
            interval=_number(env, "PROBE_INTERVAL", 5.0, float),
            health_port=_number(env, "HEALTH_PORT", 8080, int),
        )


# Empty strings count as unset
def _opt(env: Mapping[str, str], name: str) -> Optional[str]:
    v = (env.get(name) or "").strip()
    return v or None


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = _opt(env, name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value
