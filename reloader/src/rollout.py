from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from reloader.src.events import EVENT_TYPE_NORMAL
from reloader.src.metrics import METRICS
from reloader.src.settings import ReloaderSettings
from reloader.src.store import KubeObjectStore
from reloader.src.workloads import Workload

LOGGER = logging.getLogger(__name__)


class Recorder(Protocol):
    def record(
        self, obj: Any, severity: str, reason: str, message_template: str, *args: Any
    ) -> Any: ...


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the rollout annotation value so Kubernetes sees a template change
    and triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RolloutTrigger:
    """Forces a workload to roll its pods by stamping its pod template.

    This is the mechanism behind ``kubectl rollout restart``: any change to
    the pod template creates a new revision.  The write is a full replace
    carrying the ``resourceVersion`` the workload was read at, so a
    concurrent writer makes it fail with ``Conflict`` instead of being
    overwritten.  Conflicts are not retried here; the reconciler starts
    over from a fresh read.
    """

    def __init__(
        self,
        store: KubeObjectStore,
        recorder: Recorder,
        settings: ReloaderSettings,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.settings = settings
        self.now_fn = now_fn

    def trigger(self, workload: Workload, cancel: threading.Event | None = None) -> str:
        """Stamp the rollout annotation, write the workload and return the timestamp."""
        timestamp = self.now_fn()
        workload.set_template_annotation(self.settings.rollout_annotation_key, timestamp)
        try:
            self.store.update(workload, cancel)
        except Exception as exc:
            METRICS.rollout_errors_total.labels(
                kind=str(workload.kind), reason=type(exc).__name__
            ).inc()
            raise

        self.recorder.record(
            workload,
            EVENT_TYPE_NORMAL,
            "Reloaded",
            "%s %s reloaded",
            str(workload.kind),
            workload.name,
        )
        LOGGER.info(
            "Reloaded %s %s/%s",
            workload.kind,
            workload.namespace,
            workload.name,
            extra={
                "fields": {
                    "kind": str(workload.kind),
                    "namespace": workload.namespace,
                    "workload": workload.name,
                    "rolloutAt": timestamp,
                }
            },
        )
        METRICS.rollouts_total.labels(kind=str(workload.kind)).inc()
        return timestamp
