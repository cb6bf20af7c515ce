"""
Logging setup and snapshot publication.

Structured data rides on log records as ``extra={"fields": {...}}``. The
console gets them as trailing key=value pairs; the optional Splunk HTTP Event
Collector handler ships them as JSON. HEC posts happen on a QueueListener
thread, so a slow or dead collector never holds up a probe round. With
SENTRY_DSN set, ERROR records also go to Sentry as events.
"""

from __future__ import annotations

import logging
import logging.handlers
import queue
import socket
import sys
from typing import Any, Callable, Dict, Mapping, Optional, TextIO

import requests
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from .config import ConfigError, Settings

logger = logging.getLogger(__name__)

STATS_LOGGER = "netmon.stats"


class FieldsFormatter(logging.Formatter):
    """Append a record's structured fields as sorted key=value pairs."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        base = super().formatMessage(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return base
        pairs = " ".join(f"{k}={_render(v)}" for k, v in sorted(fields.items()))
        return f"{base} {pairs}"


def _render(v: Any) -> str:
    if isinstance(v, float):
        return f"{v:.3f}"
    s = str(v)
    return f'"{s}"' if (" " in s or not s) else s


class SplunkHECHandler(logging.Handler):
    """POST each record to a Splunk HTTP Event Collector endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        source: str = "netmon",
        level: int = logging.INFO,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"SPLUNK_URL must be an http(s) URL, got {url!r}")
        super().__init__(level)
        self.url = url
        self.timeout = float(timeout)
        self.source = source
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Splunk {token}"
        self._host = socket.gethostname()

    def build_event(self, record: logging.LogRecord) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "message": record.getMessage(),
            "level": record.levelname,
            "logger": record.name,
        }
        event.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            event["exception"] = logging.Formatter().formatException(record.exc_info)
        return {
            "time": record.created,
            "host": self._host,
            "source": self.source,
            "sourcetype": "_json",
            "event": event,
        }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            resp = self.session.post(self.url, json=self.build_event(record), timeout=self.timeout)
            resp.raise_for_status()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            self.session.close()
        finally:
            super().close()


class SnapshotPublisher:
    """Hand one round's snapshot to the logging pipeline as an INFO "stats" record."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger(STATS_LOGGER)

    def publish(self, snapshot: Mapping[str, float]) -> None:
        self.log.info("stats", extra={"fields": dict(snapshot)})


def init_sentry(settings: Settings, init: Callable[..., Any] = sentry_sdk.init) -> bool:
    """Send ERROR records to Sentry when SENTRY_DSN is set; INFO and up ride along as breadcrumbs."""
    if not settings.sentry_dsn:
        return False
    try:
        init(
            settings.sentry_dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        )
    except Exception as e:
        logger.error("Unable to initialize sentry handler", extra={"fields": {"error": str(e)}})
        return False
    return True


def configure_logging(
    settings: Settings,
    stream: Optional[TextIO] = None,
    session: Optional[requests.Session] = None,
    sentry_init: Callable[..., Any] = sentry_sdk.init,
) -> Optional[logging.handlers.QueueListener]:
    """
    Install the console handler, then Sentry and the HEC forwarder if configured.

    Returns the QueueListener driving the forwarder (caller stops it on exit),
    or None when no forwarder is configured. A bad sink configuration is
    logged and skipped; a bad LOG_LEVEL raises ConfigError.
    """
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        raise ConfigError(f"LOG_LEVEL={settings.log_level!r} is not a logging level")

    root = logging.getLogger()
    # Reconfiguring replaces whatever a previous call installed
    for h in [h for h in root.handlers if getattr(h, "_netmon", False)]:
        root.removeHandler(h)
        h.close()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setLevel(level)
    console.setFormatter(FieldsFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    console._netmon = True
    root.addHandler(console)
    root.setLevel(level)

    init_sentry(settings, init=sentry_init)

    if not settings.splunk_url:
        return None

    try:
        hec = SplunkHECHandler(settings.splunk_url, token=settings.splunk_token, session=session)
    except ValueError as e:
        logger.error("Unable to initialize splunk handler", extra={"fields": {"error": str(e)}})
        return None

    q: "queue.Queue[logging.LogRecord]" = queue.Queue(-1)
    forwarder = logging.handlers.QueueHandler(q)
    forwarder.setLevel(logging.INFO)
    forwarder._netmon = True
    root.addHandler(forwarder)
    root.setLevel(min(level, logging.INFO))

    listener = logging.handlers.QueueListener(q, hec, respect_handler_level=True)
    listener.start()
    return listener
