from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from reloader.src.errors import (
    Cancelled,
    NotFound,
    ReconcileError,
    ReloaderError,
    UnsupportedType,
)
from reloader.src.model import ConfigSource, ReconcileRequest
from reloader.src.resolver import WorkloadResolver
from reloader.src.rollout import RolloutTrigger
from reloader.src.store import KubeObjectStore

LOGGER = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    ROLLING = "rolling"
    DONE = "done"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a reconciliation that reached ``DONE``.

    ``rolled`` lists ``Kind/name`` for every workload whose rollout was
    written; ``matched`` counts the workloads the resolver returned.
    """

    request: ReconcileRequest
    state: ReconcileState
    matched: int = 0
    rolled: tuple[str, ...] = ()


class Reconciler:
    """Fetch the changed ConfigSource, resolve its dependants and roll them.

    Stateless and safe to re-run: a redelivered request simply re-reads
    everything and stamps a newer timestamp.  Failures are raised as a
    single :class:`ReconcileError` so the work queue can redeliver the
    request; a ConfigSource that no longer exists ends the reconciliation
    successfully.
    """

    def __init__(
        self,
        store: KubeObjectStore,
        resolver: WorkloadResolver,
        trigger: RolloutTrigger,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.trigger = trigger

    def reconcile(
        self, request: ReconcileRequest, cancel: threading.Event | None = None
    ) -> ReconcileResult:
        state = ReconcileState.FETCHING
        try:
            try:
                source = self.store.get(request.namespace, request.name, request.kind, cancel)
            except NotFound:
                LOGGER.info("%s no longer exists; nothing to reload", request)
                return ReconcileResult(request=request, state=ReconcileState.DONE)
            if not isinstance(source, ConfigSource):
                raise UnsupportedType(source, "a ConfigSource")

            state = ReconcileState.RESOLVING
            workloads = self.resolver.resolve(source, cancel)
        except ReloaderError as exc:
            raise ReconcileError(request, state, [exc]) from exc

        if not workloads:
            LOGGER.info("%s changed, but no workloads reference it", request)
            return ReconcileResult(request=request, state=ReconcileState.DONE)

        state = ReconcileState.ROLLING
        rolled: list[str] = []
        failures: list[ReloaderError] = []
        for workload in workloads:
            try:
                self.trigger.trigger(workload, cancel)
            except Cancelled as exc:
                raise ReconcileError(request, state, [*failures, exc]) from exc
            except NotFound:
                LOGGER.info("%s was deleted before it could be reloaded; skipping", workload)
                continue
            except ReloaderError as exc:
                LOGGER.warning("Failed to reload %s for %s: %s", workload, request, exc)
                failures.append(exc)
                continue
            rolled.append(str(workload))

        if failures:
            raise ReconcileError(request, state, failures) from failures[0]

        return ReconcileResult(
            request=request,
            state=ReconcileState.DONE,
            matched=len(workloads),
            rolled=tuple(rolled),
        )
