from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from pulsepro.src.config import ConfigError, load_config
from pulsepro.src.controller import build_operator
from pulsepro.src.health import start_health_server
from pulsepro.src.kube import build_clients, load_kube_configuration
from pulsepro.src.metrics import METRICS

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
    (
        re.compile(r"(?i)(https?://[^\s:/@]+:)([^\s@/]+)(@)"),
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

    Messages and tracebacks pass through :func:`redact_sensitive_text` because
    git, helm and gcloud output can echo credentials embedded in URLs.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Operator entrypoint: configure logging, wire the controller, and run until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    try:
        operator_config = load_config()
    except ConfigError:
        logger.exception("Invalid operator configuration")
        sys.exit(2)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()
    controller = build_operator(operator_config, core_api=core_api, custom_api=custom_api)
    health_server = start_health_server(
        ready=controller.ready,
        port=operator_config.health_port,
        listed_kinds=controller.listed_kinds,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Starting PulsePro operator (namespace=%s, workers=%d)",
        operator_config.watch_namespace or "<all>",
        operator_config.workers,
    )
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    if controller.fatal.is_set():
        logger.error("Operator stopped after a fatal Kubernetes API error")
        sys.exit(1)
    logger.info("Operator stopped")


if __name__ == "__main__":
    main()
