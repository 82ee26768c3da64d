from __future__ import annotations

import json
import logging
import os
import re
import sys

from autopilot.src.config import ConfigError, load_config
from autopilot.src.controller import WatchSourceError, build_controller
from autopilot.src.health import start_health_server
from autopilot.src.informer import Informer
from autopilot.src.kube import build_clients, load_kube_configuration, resolve_list_function
from autopilot.src.lifecycle import ShutdownCoordinator
from autopilot.src.metrics import METRICS

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
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> int:
    """Controller entrypoint: configure logging, sync the cache, and reconcile until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    load_kube_configuration()
    core_api, apps_api = build_clients()
    list_func, list_kwargs = resolve_list_function(
        config.resource_kind, core_api, apps_api, namespace=config.namespace
    )
    informer = Informer(
        list_func,
        config.resource_kind,
        list_kwargs=list_kwargs,
        label_selector=config.label_selector,
        resync_period=config.resync_period_seconds,
    )
    controller = build_controller(config, informer)

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        state=lambda: controller.state.value,
    )
    coordinator = ShutdownCoordinator(controller, shutdown_timeout=config.shutdown_timeout_seconds)
    coordinator.install_signal_handlers()

    logger.info(
        "Starting AutoPilot controller for %s (namespace=%s, workers=%d)",
        config.resource_kind,
        config.namespace or "<all>",
        config.workers,
    )
    try:
        stopped_cleanly = coordinator.run()
    except WatchSourceError:
        logger.exception("Watch source failure; exiting")
        return 1
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")
    return 0 if stopped_cleanly else 1


if __name__ == "__main__":
    sys.exit(main())
