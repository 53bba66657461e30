from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from reloader.src.workloads import Workload

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _object_reference(obj: Any) -> V1ObjectReference:
    if isinstance(obj, Workload):
        kind, target = str(obj.kind), obj.obj
    else:
        kind, target = getattr(obj, "kind", None) or type(obj).__name__.removeprefix("V1"), obj
    metadata = getattr(target, "metadata", None)
    return V1ObjectReference(
        api_version=getattr(target, "api_version", None) or "apps/v1",
        kind=kind,
        name=getattr(metadata, "name", None),
        namespace=getattr(metadata, "namespace", None),
        uid=getattr(metadata, "uid", None),
        resource_version=getattr(metadata, "resource_version", None),
    )


class EventRecorder:
    """Records core/v1 Events against Kubernetes objects.

    Recording is best-effort: a failed write is logged and never fails the
    operation that produced the event.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = "reloader",
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.now_fn = now_fn

    def record(
        self,
        obj: Any,
        severity: str,
        reason: str,
        message_template: str,
        *args: Any,
    ) -> CoreV1Event | None:
        reference = _object_reference(obj)
        message = message_template % args if args else message_template
        now = self.now_fn()
        event = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{reference.name}.",
                namespace=reference.namespace,
            ),
            involved_object=reference,
            reason=reason,
            message=message,
            type=severity,
            source=V1EventSource(component=self.component),
            reporting_component=self.component,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=reference.namespace, body=event)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event for %s %s/%s: %s",
                reason,
                reference.kind,
                reference.namespace,
                reference.name,
                exc.reason,
            )
            return None
        return event


class NullRecorder:
    """Recorder used when event recording is disabled in the settings."""

    def record(
        self,
        obj: Any,
        severity: str,
        reason: str,
        message_template: str,
        *args: Any,
    ) -> None:
        LOGGER.debug("Event recording disabled; skipping %s event", reason)
