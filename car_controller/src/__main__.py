from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from typing import Any

from car_controller.src.config import load_config
from car_controller.src.controller import build_controller
from car_controller.src.health import start_health_server
from car_controller.src.kube import build_clients, load_kube_configuration
from car_controller.src.metrics import METRICS

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
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    A ``context`` mapping passed via ``extra={"context": {...}}`` is emitted
    under ``"context"``; reconcile diagnostics use it for the Car key and
    the colours involved.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            log_entry["context"] = {
                str(key): _jsonable(value) for key, value in context.items()
            }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def main() -> None:
    """Controller entrypoint: load config, configure logging, and run the controller."""
    cfg = load_config()
    configure_logging(cfg.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "color": cfg.color,
        }
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()

    controller = build_controller(cfg, core_api=core_api, custom_api=custom_api)
    health_server = start_health_server(
        ready=controller.ready,
        port=cfg.health_port,
        live=controller.threads_alive,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logging.getLogger(__name__).info(
        "Starting car controller",
        extra={
            "context": {
                "color": cfg.color,
                "namespace": cfg.namespace or "<all>",
                "workers": cfg.max_concurrent_reconciles,
            }
        },
    )
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
