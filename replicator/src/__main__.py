from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from replicator.src.config import ConfigError, load_config
from replicator.src.controller import build_controller
from replicator.src.health import start_health_server
from replicator.src.informer import ConfigMapInformer
from replicator.src.kube import build_core_api, load_kube_configuration
from replicator.src.metrics import METRICS

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


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

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
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Replicator entrypoint: configure logging, start the cache and run the workers."""
    configure_logging()
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "mode": config.mode,
        }
    )

    load_kube_configuration()
    core_api = build_core_api()

    informer = ConfigMapInformer(core_api=core_api)
    controller = build_controller(core_api=core_api, informer=informer, config=config)
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Replicating ConfigMaps (mode=%s, ignored namespaces: %s)",
        config.mode,
        ", ".join(sorted(config.ignored_namespaces)) or "none",
    )
    informer.start()
    try:
        controller.run(stop_event=shutdown_event)
    finally:
        informer.stop()
        health_server.shutdown()
    if controller.cache_failed:
        logger.error("Controller stopped because the ConfigMap cache failed")
        raise SystemExit(1)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
