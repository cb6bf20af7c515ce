"""
Network-health prober service.

Every interval it times two DNS lookups and two ICMP echoes in parallel and
logs the results as one "stats" record.

Public entrypoint: main
"""

from .cli import main

__all__ = ["main"]
