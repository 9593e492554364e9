from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from foo_controller.src.controller import build_controller_from_env, env_int
from foo_controller.src.errors import StartupPrerequisiteMissing
from foo_controller.src.health import start_health_server
from foo_controller.src.kube import build_clients, load_kube_configuration
from foo_controller.src.metrics import METRICS

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
    """Install the JSON formatter on the root logger with a level from ``LOG_LEVEL``."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, verify the CRD, and run the reconcile loop."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    custom_api, extensions_api = build_clients()

    controller = build_controller_from_env(custom_api=custom_api, extensions_api=extensions_api)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        state_fn=controller.current_state,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    except StartupPrerequisiteMissing as exc:
        logging.getLogger(__name__).error("Startup prerequisite missing: %s", exc)
        raise SystemExit(1) from exc
    finally:
        health_server.shutdown()

    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
