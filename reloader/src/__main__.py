from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from kubernetes.client import CoreV1Api

from reloader.src.controller import ReloadController
from reloader.src.health import start_health_server
from reloader.src.metrics import METRICS
from reloader.src.settings import ReloaderSettings, load_settings
from reloader.src.settings_watch import SettingsWatcher, read_settings_document
from reloader.src.store import build_clients, load_kube_configuration

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

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
    """Emit logs as single-line JSON objects for structured log aggregation.

    Structured fields passed as ``extra={"fields": {...}}`` are merged into
    the top-level object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                log_entry.setdefault(str(key), value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry, default=str)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def resolve_settings(
    core_api: CoreV1Api, on_change: Callable[[], None]
) -> tuple[ReloaderSettings, SettingsWatcher | None]:
    """Load settings from the environment and the optional settings ConfigMap.

    When ``SETTINGS_CONFIGMAP`` is set, the YAML document under
    ``SETTINGS_KEY`` (default ``config``) in ``SETTINGS_NAMESPACE`` (default
    ``default``) overrides the environment, and a watcher is returned that
    fires when that document changes.
    """
    configmap_name = os.getenv("SETTINGS_CONFIGMAP", "").strip()
    if not configmap_name:
        return load_settings(), None

    namespace = os.getenv("SETTINGS_NAMESPACE", "default")
    key = os.getenv("SETTINGS_KEY", "config")
    document = read_settings_document(core_api, namespace=namespace, name=configmap_name, key=key)
    settings = load_settings(document_text=document)
    LOGGER.info("Loaded settings from ConfigMap %s/%s key %s", namespace, configmap_name, key)
    watcher = SettingsWatcher(
        core_api=core_api,
        namespace=namespace,
        name=configmap_name,
        key=key,
        initial_value=document,
        on_change=on_change,
        timeout_seconds=settings.watch_timeout_seconds,
    )
    return settings, watcher


def run_with_leader_election(
    controller: ReloadController,
    settings: ReloaderSettings,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run the controller only while this replica holds the leader Lease."""
    from kubernetes.client import CoordinationV1Api

    from reloader.src.leader import LeaseLeaderElector, default_identity

    elector = LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        namespace=settings.leader_election_namespace,
        lease_name=settings.leader_election_lease_name,
        identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
        lease_duration_seconds=settings.lease_duration_seconds,
        renew_deadline_seconds=settings.renew_deadline_seconds,
        retry_period_seconds=settings.retry_period_seconds,
    )

    controller_thread: threading.Thread | None = None
    state_lock = threading.Lock()
    # Must exceed the watch timeout so a handoff never overlaps two watch loops.
    join_timeout_seconds = settings.watch_timeout_seconds + 15

    def on_started_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller thread still running; shutting down")
                shutdown_event.set()
                return
            leader_ready.set()

            def _run_controller() -> None:
                try:
                    controller.run_forever()
                except Exception:
                    LOGGER.exception("Controller thread crashed")
                    shutdown_event.set()
                    return
                if leader_ready.is_set() and not shutdown_event.is_set():
                    LOGGER.error("Controller exited without a stop signal; terminating process")
                    shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            if controller_thread is None:
                return
            controller_thread.join(timeout=join_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss after losing leadership; shutting down",
                    join_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Entrypoint: configure logging, load settings and run the reload controller."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    shutdown_event = threading.Event()
    settings, settings_watcher = resolve_settings(core_api, on_change=shutdown_event.set)

    controller = ReloadController(core_api=core_api, apps_api=apps_api, settings=settings)
    leader_ready = threading.Event() if settings.leader_election else None
    health_server = start_health_server(
        is_ready=controller.is_ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if settings_watcher is not None:
        threading.Thread(
            target=settings_watcher.run_forever,
            args=(shutdown_event,),
            name="settings-watcher",
            daemon=True,
        ).start()

    if leader_ready is not None:
        run_with_leader_election(controller, settings, leader_ready, shutdown_event)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
