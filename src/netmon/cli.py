
import argparse
import dataclasses
import json
import logging
import sys
from typing import Callable, List, Mapping, Optional

from cycle.scheduler import CycleScheduler, ProbeJob
from probes.models import ProbeTarget
from probes.ping import ICMPProber
from probes.resolve import DNSProber

from .app import serve_in_background
from .bootstrap import BootstrapError, resolve_gateway, resolve_local_dns
from .config import (
    DNS_TIMEOUT,
    GOOGLE_DNS_ADDR,
    GOOGLE_PING_ADDR,
    PING_TIMEOUT,
    QUERY_NAME,
    ConfigError,
    Settings,
)
from .logsink import SnapshotPublisher, configure_logging

"""
Process entrypoint for the network-health prober.
  1) Read settings from the environment (CLI flags override a few)
  2) Resolve the local DNS server and default gateway, or die trying
  3) Probe all four targets every interval and log one "stats" record per round
"""

logger = logging.getLogger(__name__)


# Parse the command-line arguments
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Periodic DNS + ICMP latency prober")
    p.add_argument("--once", action="store_true", help="Run a single round, print the snapshot as JSON and exit")
    p.add_argument("--interval", type=float, default=None, help="Seconds between rounds (overrides PROBE_INTERVAL)")
    p.add_argument("--log-level", default=None, help="Console log level (overrides LOG_LEVEL)")
    p.add_argument("--no-health", action="store_true", help="Do not start the liveness HTTP listener")
    return p.parse_args(argv)


def build_jobs(
    local_dns: str,
    gateway: str,
    dns_prober: Optional[DNSProber] = None,
    icmp_prober: Optional[ICMPProber] = None,
) -> List[ProbeJob]:
    """The four steady-state probes: two resolvers, two ping targets."""
    resolve = dns_prober or DNSProber(qname=QUERY_NAME, timeout=DNS_TIMEOUT)
    ping = icmp_prober or ICMPProber(timeout=PING_TIMEOUT)
    return [
        ProbeJob(resolve, ProbeTarget("local", local_dns)),
        ProbeJob(resolve, ProbeTarget("google", GOOGLE_DNS_ADDR)),
        ProbeJob(ping, ProbeTarget("gateway", gateway)),
        ProbeJob(ping, ProbeTarget("google", GOOGLE_PING_ADDR)),
    ]


def load_settings(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Settings:
    settings = Settings.from_env(environ)
    if args.interval is not None:
        if args.interval <= 0:
            raise ConfigError("--interval must be positive")
        settings = dataclasses.replace(settings, interval=args.interval)
    if args.log_level:
        settings = dataclasses.replace(settings, log_level=args.log_level.upper())
    return settings


def main(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    serve: Callable[..., object] = serve_in_background,
) -> int:
    """
    CLI entrypoint.

    Returns:
        Process exit code (0 = success, 1 = configuration/bootstrap failure).
    """
    args = parse_args(argv)

    try:
        settings = load_settings(args, environ)
        listener = configure_logging(settings)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    try:
        try:
            local_dns = resolve_local_dns(settings)
            gateway = resolve_gateway(settings)
        except BootstrapError as e:
            logger.critical("unable to determine probe targets", extra={"fields": {"error": str(e)}})
            return 1

        scheduler = CycleScheduler(build_jobs(local_dns, gateway), SnapshotPublisher(), interval=settings.interval)

        if args.once:
            print(json.dumps(scheduler.run_round(), indent=2, sort_keys=True))
            return 0

        if not args.no_health:
            serve(port=settings.health_port)

        logger.info(
            "starting probe loop",
            extra={
                "fields": {
                    "local_dns": local_dns,
                    "gateway": gateway,
                    "interval": settings.interval,
                    "keys": ",".join(scheduler.keys),
                }
            },
        )
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            logger.info("interrupted, shutting down")
        return 0
    finally:
        if listener is not None:
            listener.stop()


if __name__ == "__main__":
    raise SystemExit(main())
