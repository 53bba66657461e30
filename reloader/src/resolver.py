from __future__ import annotations

import logging
import threading

from reloader.src.model import ConfigSource
from reloader.src.settings import ReloaderSettings
from reloader.src.store import KubeObjectStore
from reloader.src.workloads import Workload

LOGGER = logging.getLogger(__name__)


class WorkloadResolver:
    """Finds the workloads that declare a dependency on a ConfigSource.

    The binding label value on the ConfigSource is used as a selector:
    every workload of a configured kind in the same namespace carrying
    ``{label_key: value}`` among its own labels is a dependant.  Kinds are
    listed in settings order (Deployments, StatefulSets, DaemonSets by
    default) and the results concatenated.
    """

    def __init__(self, store: KubeObjectStore, settings: ReloaderSettings) -> None:
        self.store = store
        self.settings = settings

    def resolve(
        self, source: ConfigSource, cancel: threading.Event | None = None
    ) -> list[Workload]:
        """Return the dependent workloads, possibly none.

        An empty result is normal: configuration is often created before
        the first workload that consumes it.
        """
        value = source.labels.get(self.settings.label_key)
        if value is None:
            LOGGER.debug(
                "%s %s/%s has no %s label; nothing to resolve",
                source.kind,
                source.namespace,
                source.name,
                self.settings.label_key,
            )
            return []

        selector = {self.settings.label_key: value}
        workloads: list[Workload] = []
        for kind in self.settings.workload_kinds:
            workloads.extend(
                self.store.list_by_label(source.namespace, selector, kind, cancel)
            )
        return workloads
