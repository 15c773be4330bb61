from __future__ import annotations

import json
import logging
import os
import random
import re
import signal
import sys
import threading
from collections.abc import Callable

from orchestrator.src.config import ClusterFlavor, ConfigError, OrchestratorConfig, env_int, load_config
from orchestrator.src.context import ContextHolder, OrchestratorContext, bootstrap
from orchestrator.src.errors import BootstrapError, FatalErrorSink
from orchestrator.src.health import start_health_server
from orchestrator.src.kube import (
    build_clients,
    build_remote_api_client,
    load_kube_configuration,
    read_supervisor_namespace,
)
from orchestrator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

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


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

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
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def build_context_factory(
    config: OrchestratorConfig, fatal: FatalErrorSink
) -> Callable[[], OrchestratorContext]:
    """Return the one-shot builder the :class:`ContextHolder` runs on first use."""

    def _build() -> OrchestratorContext:
        clients = build_clients()
        remote_clients = None
        supervisor_namespace = None
        if config.flavor is ClusterFlavor.GUEST:
            try:
                remote_clients = build_clients(
                    build_remote_api_client(
                        config.supervisor_endpoint, config.supervisor_port, config.provider_path
                    )
                )
                supervisor_namespace = read_supervisor_namespace(config.provider_path)
            except (OSError, ValueError) as exc:
                raise BootstrapError(f"failed to build management plane client: {exc}") from exc
        return bootstrap(
            config,
            clients,
            fatal,
            remote_clients=remote_clients,
            supervisor_namespace=supervisor_namespace,
        )

    return _build


def initialise(
    holder: ContextHolder,
    shutdown_event: threading.Event,
    max_backoff_seconds: float = 30,
) -> OrchestratorContext | None:
    """Build the context, retrying with jittered backoff; None if shut down first."""
    backoff_seconds = 1.0
    while not shutdown_event.is_set():
        try:
            return holder.get()
        except BootstrapError:
            LOGGER.exception("Orchestrator initialisation failed; retrying")
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        shutdown_event.wait(timeout=jittered)
        backoff_seconds = min(backoff_seconds * 2, max_backoff_seconds)
    return None


def main() -> None:
    """Entrypoint: configure logging, bootstrap the context, and wait for shutdown or a fatal error."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    except ConfigError:
        LOGGER.exception("Invalid orchestrator configuration")
        sys.exit(1)

    load_kube_configuration()

    shutdown_event = threading.Event()
    fatal = FatalErrorSink(wake=shutdown_event)
    holder = ContextHolder(build_context_factory(config, fatal))

    def _pending_kinds() -> list[str] | None:
        context = holder.current
        return None if context is None else context.pending_kinds()

    health_server = start_health_server(_pending_kinds, port=health_port)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    context = initialise(holder, shutdown_event)
    if context is not None:
        poller = context.build_capability_poller()
        if poller is not None:
            poller.start(context.shutdown)
        shutdown_event.wait()
        context.stop()

    health_server.shutdown()

    error = fatal.error
    if error is not None:
        LOGGER.error("Exiting after fatal condition (%s): %s", error.reason, error)
        sys.exit(1)
    LOGGER.info("Orchestrator stopped")


if __name__ == "__main__":
    main()
