from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .targets import require_name

RESOLVE = "resolve"
PING = "ping"
KINDS = (RESOLVE, PING)


def metric_key(kind: str, name: str) -> str:
    """Stable metric name for one probe: ``<kind>.<targetName>.time``."""
    if kind not in KINDS:
        raise ValueError(f"Unknown probe kind {kind!r}")
    return f"{kind}.{require_name(name)}.time"


@dataclass(frozen=True)
class ProbeTarget:
    """One network endpoint a probe is sent to."""
    name: str
    address: str

    def __post_init__(self) -> None:
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "name", require_name(self.name))
        object.__setattr__(self, "address", (self.address or "").strip())


@dataclass
class ProbeResult:
    """
    Outcome of exactly one probe execution.

    elapsed is wall-clock seconds from just before send to reply (or failure).
    Only ok results are ever recorded into a round's snapshot.
    """

    key: str
    elapsed: float = 0.0
    ok: bool = False
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)  # debug/telemetry

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "elapsed_ms": self.elapsed_ms,
            "ok": self.ok,
            "error": self.error,
            "meta": self.meta,
        }
