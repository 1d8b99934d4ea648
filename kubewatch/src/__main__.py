from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubewatch.src.config import load_config_from_env
from kubewatch.src.handlers import LoggingHandler
from kubewatch.src.health import start_health_server
from kubewatch.src.kube import build_clients, load_kube_configuration
from kubewatch.src.metrics import METRICS
from kubewatch.src.orchestrator import WatchOrchestrator

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)
# Longer than WATCH_TIMEOUT_CAP_SECONDS so a loop on a quiet stream can finish.
STOP_TIMEOUT_SECONDS = 45


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    The thread name is included because every watched kind runs on its own
    ``kubewatch-<kind>`` thread.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> int:
    """Entrypoint: configure logging, start one watch loop per kind, and serve health checks.

    Returns the process exit code: ``0`` after a signal-driven shutdown and
    ``1`` when setup failed or a reconciliation loop died.
    """
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config_from_env()
        load_kube_configuration()
        clients = build_clients()
    except Exception:
        logger.critical("Failed to initialise kubewatch", exc_info=True)
        return 1

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    orchestrator = WatchOrchestrator(clients=clients, handler=LoggingHandler(), config=config)
    health_server = start_health_server(ready=orchestrator.ready, port=config.health_port)
    orchestrator.start(shutdown_event)

    while not shutdown_event.wait(timeout=1.0):
        pass

    stopped_cleanly = orchestrator.stop(timeout=STOP_TIMEOUT_SECONDS)
    health_server.shutdown()
    if orchestrator.failed or not stopped_cleanly:
        logger.error("kubewatch stopped after a fatal error")
        return 1
    logger.info("kubewatch stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
