from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.errors import Cancelled, Conflict, NotFound, StoreError, UnsupportedType
from reloader.src.model import ConfigSource, ConfigSourceKind
from reloader.src.workloads import ADAPTERS, Workload, WorkloadKind

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def format_selector(selector: Mapping[str, str]) -> str:
    """Render an equality label selector (``k=v,k2=v2``) for the list APIs."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("operation cancelled")


class KubeObjectStore:
    """Typed get/list/update access to ConfigSources and workloads.

    Translates API errors into the engine's taxonomy: ``404`` becomes
    :class:`NotFound`, ``409`` becomes :class:`Conflict` and anything else
    :class:`StoreError`.  The Python client cannot abort a request already
    on the wire, so *cancel* is checked before and after every call.
    """

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api

    def _call(
        self,
        fn: Callable[..., T],
        api_kwargs: dict[str, Any],
        *,
        kind: str,
        namespace: str,
        name: str,
        cancel: threading.Event | None,
    ) -> T:
        _check_cancelled(cancel)
        try:
            result = fn(**api_kwargs)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFound(kind, namespace, name) from exc
            if exc.status == 409:
                raise Conflict(kind, namespace, name) from exc
            raise StoreError(
                f"{kind} {namespace}/{name}: API error {exc.status} {exc.reason}",
                status=exc.status,
            ) from exc
        _check_cancelled(cancel)
        return result

    def get(
        self,
        namespace: str,
        name: str,
        kind: ConfigSourceKind,
        cancel: threading.Event | None = None,
    ) -> ConfigSource:
        """Read one ConfigMap or Secret and normalise it into a :class:`ConfigSource`."""
        if kind is ConfigSourceKind.CONFIG_MAP:
            read = self.core_api.read_namespaced_config_map
        elif kind is ConfigSourceKind.SECRET:
            read = self.core_api.read_namespaced_secret
        else:
            raise UnsupportedType(kind, "a ConfigSourceKind")
        obj = self._call(
            read,
            {"name": name, "namespace": namespace},
            kind=str(kind),
            namespace=namespace,
            name=name,
            cancel=cancel,
        )
        return ConfigSource.from_object(obj)

    def list_by_label(
        self,
        namespace: str,
        selector: Mapping[str, str],
        kind: WorkloadKind,
        cancel: threading.Event | None = None,
    ) -> list[Workload]:
        """List workloads of *kind* in *namespace* whose labels match *selector*."""
        if not isinstance(kind, WorkloadKind):
            raise UnsupportedType(kind, "a WorkloadKind")
        adapter = ADAPTERS[kind]
        label_selector = format_selector(selector)
        result = self._call(
            getattr(self.apps_api, adapter.list_method),
            {"namespace": namespace, "label_selector": label_selector},
            kind=str(kind),
            namespace=namespace,
            name=label_selector,
            cancel=cancel,
        )
        workloads: list[Workload] = []
        for item in result.items or []:
            workload = Workload.from_object(item)
            if workload.kind is not kind:
                raise UnsupportedType(item, f"a {adapter.model.__name__}")
            workloads.append(workload)
        return workloads

    def update(self, workload: Workload, cancel: threading.Event | None = None) -> Workload:
        """Replace the workload, guarded by the ``resourceVersion`` it was read at."""
        if not isinstance(workload, Workload):
            raise UnsupportedType(workload, "a Workload")
        adapter = workload.adapter
        updated = self._call(
            getattr(self.apps_api, adapter.replace_method),
            {"name": workload.name, "namespace": workload.namespace, "body": workload.obj},
            kind=str(workload.kind),
            namespace=workload.namespace,
            name=workload.name,
            cancel=cancel,
        )
        if isinstance(updated, adapter.model):
            workload.obj = updated
        return workload
