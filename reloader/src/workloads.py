from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import (
    V1DaemonSet,
    V1Deployment,
    V1ObjectMeta,
    V1PodTemplateSpec,
    V1StatefulSet,
)

from reloader.src.errors import UnsupportedType


class WorkloadKind(str, Enum):
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> WorkloadKind:
        """Accept ``Deployment``/``deployment``/``deployments`` style spellings."""
        normalized = value.strip().lower().removesuffix("s")
        for kind in cls:
            if kind.value.lower() == normalized:
                return kind
        raise ValueError(f"unknown workload kind: {value!r}")


@dataclass(frozen=True)
class PodTemplateAdapter:
    """Uniform pod-template access for one workload kind.

    The three apps/v1 kinds share the ``spec.template.metadata`` shape, so
    only the model class and the AppsV1Api method names differ per kind.
    """

    kind: WorkloadKind
    model: type
    read_method: str
    list_method: str
    replace_method: str

    def template_annotations(self, obj: Any) -> dict[str, str]:
        """Return a copy of the pod template annotations (empty when unset)."""
        template = getattr(getattr(obj, "spec", None), "template", None)
        metadata = getattr(template, "metadata", None)
        annotations = getattr(metadata, "annotations", None)
        if not isinstance(annotations, dict):
            return {}
        return dict(annotations)

    def set_template_annotation(self, obj: Any, key: str, value: str) -> None:
        """Set one pod template annotation, creating template metadata if needed."""
        spec = obj.spec
        if spec.template is None:
            spec.template = V1PodTemplateSpec()
        if spec.template.metadata is None:
            spec.template.metadata = V1ObjectMeta()
        if spec.template.metadata.annotations is None:
            spec.template.metadata.annotations = {}
        spec.template.metadata.annotations[key] = value


ADAPTERS: dict[WorkloadKind, PodTemplateAdapter] = {
    WorkloadKind.DEPLOYMENT: PodTemplateAdapter(
        kind=WorkloadKind.DEPLOYMENT,
        model=V1Deployment,
        read_method="read_namespaced_deployment",
        list_method="list_namespaced_deployment",
        replace_method="replace_namespaced_deployment",
    ),
    WorkloadKind.STATEFUL_SET: PodTemplateAdapter(
        kind=WorkloadKind.STATEFUL_SET,
        model=V1StatefulSet,
        read_method="read_namespaced_stateful_set",
        list_method="list_namespaced_stateful_set",
        replace_method="replace_namespaced_stateful_set",
    ),
    WorkloadKind.DAEMON_SET: PodTemplateAdapter(
        kind=WorkloadKind.DAEMON_SET,
        model=V1DaemonSet,
        read_method="read_namespaced_daemon_set",
        list_method="list_namespaced_daemon_set",
        replace_method="replace_namespaced_daemon_set",
    ),
}

ALL_WORKLOAD_KINDS: tuple[WorkloadKind, ...] = tuple(ADAPTERS)


@dataclass
class Workload:
    """A Deployment, StatefulSet or DaemonSet as read from the API server."""

    kind: WorkloadKind
    obj: Any

    @classmethod
    def from_object(cls, obj: Any) -> Workload:
        for adapter in ADAPTERS.values():
            if isinstance(obj, adapter.model):
                return cls(kind=adapter.kind, obj=obj)
        raise UnsupportedType(obj, "V1Deployment, V1StatefulSet or V1DaemonSet")

    @property
    def adapter(self) -> PodTemplateAdapter:
        return ADAPTERS[self.kind]

    @property
    def name(self) -> str:
        return getattr(self.obj.metadata, "name", None) or ""

    @property
    def namespace(self) -> str:
        return getattr(self.obj.metadata, "namespace", None) or ""

    @property
    def resource_version(self) -> str | None:
        return getattr(self.obj.metadata, "resource_version", None)

    def template_annotations(self) -> dict[str, str]:
        return self.adapter.template_annotations(self.obj)

    def set_template_annotation(self, key: str, value: str) -> None:
        self.adapter.set_template_annotation(self.obj, key, value)

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"
