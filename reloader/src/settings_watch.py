from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

LOGGER = logging.getLogger(__name__)


def read_settings_document(core_api: CoreV1Api, namespace: str, name: str, key: str) -> str:
    """Return the settings document stored under *key* of ConfigMap *namespace/name*."""
    config_map = core_api.read_namespaced_config_map(name=name, namespace=namespace)
    data = config_map.data or {}
    if key not in data:
        raise KeyError(f"ConfigMap {namespace}/{name} has no {key!r} key")
    return data[key]


class SettingsWatcher:
    """Watches the controller's own settings ConfigMap.

    Settings are applied at startup only, so when the watched key changes
    value ``on_change`` is called (the entrypoint then shuts down and the
    pod is restarted with the new settings).  Changes to other keys, to
    metadata, or no-op updates are ignored.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        name: str,
        key: str,
        initial_value: str | None,
        on_change: Callable[[], None],
        timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.key = key
        self.on_change = on_change
        self.timeout_seconds = timeout_seconds
        self._value = initial_value

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Return True (and fire ``on_change``) when the watched value changed."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return False
        value = None if event_type == "DELETED" else (getattr(obj, "data", None) or {}).get(self.key)
        if value == self._value:
            return False
        LOGGER.warning(
            "Settings key %r of ConfigMap %s/%s changed; restarting to apply it",
            self.key,
            self.namespace,
            self.name,
        )
        self._value = value
        self.on_change()
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        field_selector = f"metadata.name={self.name}"
        backoff_seconds = 1
        while not stop_event.is_set():
            watcher = watch.Watch()
            try:
                for event in watcher.stream(
                    self.core_api.list_namespaced_config_map,
                    namespace=self.namespace,
                    field_selector=field_selector,
                    timeout_seconds=self.timeout_seconds,
                ):
                    if stop_event.is_set():
                        break
                    obj = event.get("object")
                    if obj is not None and self.handle_event(str(event.get("type", "")), obj):
                        return
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Access denied watching settings ConfigMap %s/%s (status=%s)",
                        self.namespace,
                        self.name,
                        exc.status,
                    )
                    return
                LOGGER.warning("Settings watch error: %s", exc.reason)
                stop_event.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected settings watch error")
                stop_event.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
