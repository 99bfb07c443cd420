from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reconciler.src.config import load_settings
from reconciler.src.controller import CacheSyncTimeoutError, build_controller
from reconciler.src.health import start_health_server
from reconciler.src.kube import build_clients, load_kube_configuration
from reconciler.src.metrics import METRICS

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
        re.compile(
            r"(?i)(-----BEGIN [A-Z ]*PRIVATE KEY-----)(.*?)(-----END [A-Z ]*PRIVATE KEY-----)",
            re.S,
        ),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    Records logged from a worker thread carry the thread name, which makes
    interleaved reconciles of different keys easy to tell apart.
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


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # Per-request noise from the generated client is not useful at INFO.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main() -> None:
    """Reconciler entrypoint: configure logging, wire the controller, and run until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    logger.info(
        "Starting ConfigMap reconciler (action=%s, namespace=%s, workers=%d)",
        settings.reconcile_action,
        settings.watch_namespace or "<all>",
        settings.workers,
    )

    load_kube_configuration()
    controller = build_controller(settings, build_clients())
    health_server = start_health_server(status_fn=controller.status, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run(shutdown_event=shutdown_event)
    except CacheSyncTimeoutError:
        logger.critical("Aborting startup: ConfigMap cache never synced", exc_info=True)
        raise SystemExit(1) from None
    finally:
        health_server.shutdown()

    logger.info("Reconciler stopped")


if __name__ == "__main__":
    main()
