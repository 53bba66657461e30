from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from reloader.src.errors import ReconcileError, UnsupportedType
from reloader.src.events import EventRecorder, NullRecorder
from reloader.src.filter import EventFilter
from reloader.src.metrics import METRICS
from reloader.src.model import ConfigSource, ConfigSourceKind, ReconcileRequest
from reloader.src.reconciler import Reconciler
from reloader.src.resolver import WorkloadResolver
from reloader.src.rollout import Recorder, RolloutTrigger, utc_now_rfc3339
from reloader.src.settings import ReloaderSettings
from reloader.src.store import KubeObjectStore
from reloader.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)

_LIST_METHODS: dict[ConfigSourceKind, tuple[str, str]] = {
    ConfigSourceKind.CONFIG_MAP: (
        "list_namespaced_config_map",
        "list_config_map_for_all_namespaces",
    ),
    ConfigSourceKind.SECRET: (
        "list_namespaced_secret",
        "list_secret_for_all_namespaces",
    ),
}


class ConfigSourceInformer:
    """List-then-watch loop for one ConfigSource kind.

    Keeps the last observed snapshot of every labelled object so each
    ``MODIFIED`` notification can be handed to the :class:`EventFilter` as
    an ``(old, new)`` pair.  Admitted changes are enqueued as
    :class:`ReconcileRequest` keys.  Creations and deletions only update the
    snapshot cache; they never trigger a rollout.

    Connection handling:

    1. The initial list is retried with jittered exponential backoff (capped
       at 30 s) so transient API startup failures do not crash-loop.
    2. The watch resumes from the last seen ``resourceVersion``.
    3. On ``410 Gone`` the informer re-lists and runs the filter against the
       cached snapshots, catching changes made while disconnected.
    4. ``401``/``403`` stop the informer: RBAC problems do not heal by
       retrying.
    """

    def __init__(
        self,
        kind: ConfigSourceKind,
        core_api: CoreV1Api,
        settings: ReloaderSettings,
        event_filter: EventFilter,
        enqueue: Callable[[ReconcileRequest], None],
    ) -> None:
        self.kind = kind
        self.core_api = core_api
        self.settings = settings
        self.event_filter = event_filter
        self.enqueue = enqueue
        self.ready = threading.Event()
        self._cache: dict[tuple[str, str], ConfigSource] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_function(self) -> Callable[..., Any]:
        namespaced, cluster_wide = _LIST_METHODS[self.kind]
        if self.settings.namespace:
            return getattr(self.core_api, namespaced)
        return getattr(self.core_api, cluster_wide)

    def _list_kwargs(self) -> dict[str, Any]:
        # Existence selector: only objects carrying the binding label.
        kwargs: dict[str, Any] = {"label_selector": self.settings.label_key}
        if self.settings.namespace:
            kwargs["namespace"] = self.settings.namespace
        return kwargs

    def _snapshot(self, obj: Any) -> ConfigSource | None:
        try:
            return ConfigSource.from_object(obj)
        except UnsupportedType:
            LOGGER.exception("Dropping %s watch object of unexpected type", self.kind)
            return None

    def _on_update(self, old: ConfigSource, new: ConfigSource) -> bool:
        admitted = self.event_filter.admit(old, new)
        METRICS.filtered_events_total.labels(
            kind=str(self.kind), result="admitted" if admitted else "dropped"
        ).inc()
        if admitted:
            LOGGER.info(
                "Detected data change in %s %s/%s (resourceVersion %s)",
                new.kind,
                new.namespace,
                new.name,
                new.resource_version,
            )
            self.enqueue(new.request)
        return admitted

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Apply one watch event to the cache; return True when a reconcile was queued."""
        new = self._snapshot(obj)
        if new is None:
            return False
        key = (new.namespace, new.name)

        if event_type == "DELETED":
            self._cache.pop(key, None)
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        old = self._cache.get(key)
        self._cache[key] = new
        if old is None:
            if event_type == "MODIFIED":
                LOGGER.debug("No baseline for %s %s/%s; caching it", self.kind, *key)
            return False
        return self._on_update(old, new)

    def sync_from_list(self, listing: Any, compare: bool = False) -> None:
        """Replace the snapshot cache with a full listing.

        With ``compare=True`` (re-list after ``410 Gone``) each object that
        was already cached is run through the filter so changes missed while
        the watch was down still trigger rollouts.
        """
        seen: set[tuple[str, str]] = set()
        for obj in getattr(listing, "items", None) or []:
            new = self._snapshot(obj)
            if new is None:
                continue
            key = (new.namespace, new.name)
            seen.add(key)
            old = self._cache.get(key)
            self._cache[key] = new
            if compare and old is not None:
                self._on_update(old, new)
        for key in set(self._cache) - seen:
            del self._cache[key]

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, status: int | None, phase: str) -> bool:
        if status not in {401, 403}:
            return False
        LOGGER.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind,
            phase,
            status,
        )
        self.ready.clear()
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        self._external_stop.clear()
        self._cache.clear()
        list_fn = self._list_function()
        list_kwargs = self._list_kwargs()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                initial = list_fn(**list_kwargs)
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self.sync_from_list(initial)
                self.ready.set()
                LOGGER.info(
                    "Watching %s objects from resourceVersion %s", self.kind, resource_version
                )
                break
            except ApiException as exc:
                if self._access_denied(exc.status, "initial list"):
                    return
                LOGGER.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=str(self.kind)).inc()
            except Exception:
                LOGGER.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=str(self.kind)).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=str(self.kind)).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.settings.watch_timeout_seconds,
                    **list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    LOGGER.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        fresh = list_fn(**list_kwargs)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self.sync_from_list(fresh, compare=True)
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc.status, "re-list"):
                            return
                        LOGGER.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=str(self.kind)).inc()
                        resource_version = None
                    continue

                METRICS.watch_errors_total.labels(kind=str(self.kind)).inc()
                if self._access_denied(exc.status, "watch"):
                    return
                LOGGER.exception("Kubernetes API %s watch error", self.kind)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=str(self.kind)).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


class ReloadController:
    """Wires informers, the work queue and a pool of reconcile workers.

    One informer per enabled ConfigSource kind feeds the shared queue; the
    queue hands each :class:`ReconcileRequest` to one worker at a time.
    Failed reconciliations are redelivered with bounded exponential backoff
    (``retry_base_delay_seconds`` doubling up to ``retry_max_delay_seconds``);
    requests that can never succeed (unsupported object types) are logged
    and dropped.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        settings: ReloaderSettings,
        recorder: Recorder | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.settings = settings
        self.store = KubeObjectStore(core_api=core_api, apps_api=apps_api)
        if recorder is None:
            recorder = (
                EventRecorder(core_api, component=settings.event_component)
                if settings.record_events
                else NullRecorder()
            )
        self.event_filter = EventFilter(settings)
        self.reconciler = Reconciler(
            store=self.store,
            resolver=WorkloadResolver(self.store, settings),
            trigger=RolloutTrigger(self.store, recorder, settings, now_fn=now_fn),
        )
        self.queue = self._new_queue()
        self.informers = [
            ConfigSourceInformer(
                kind=kind,
                core_api=core_api,
                settings=settings,
                event_filter=self.event_filter,
                enqueue=self.enqueue,
            )
            for kind in settings.source_kinds
        ]
        self._external_stop = threading.Event()

    def _new_queue(self) -> WorkQueue:
        return WorkQueue(
            base_delay_seconds=self.settings.retry_base_delay_seconds,
            max_delay_seconds=self.settings.retry_max_delay_seconds,
        )

    def is_ready(self) -> bool:
        return bool(self.informers) and all(informer.ready.is_set() for informer in self.informers)

    def enqueue(self, request: ReconcileRequest) -> None:
        self.queue.add(request)

    def reconcile_request(self, request: ReconcileRequest, cancel: threading.Event) -> None:
        """Run one reconciliation and reschedule or forget the request."""
        kind = str(request.kind)
        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(request, cancel)
        except ReconcileError as exc:
            if exc.retryable:
                delay = self.queue.add_rate_limited(request)
                METRICS.retry_total.labels(kind=kind).inc()
                METRICS.reconcile_total.labels(kind=kind, result="retry").inc()
                LOGGER.warning("%s; retry %d in %.1fs", exc, self.queue.failures(request), delay)
            else:
                self.queue.forget(request)
                METRICS.reconcile_total.labels(kind=kind, result="dropped").inc()
                LOGGER.error("%s; not retrying", exc)
        except Exception:
            delay = self.queue.add_rate_limited(request)
            METRICS.retry_total.labels(kind=kind).inc()
            METRICS.reconcile_total.labels(kind=kind, result="retry").inc()
            LOGGER.exception("Unexpected error reconciling %s; retrying in %.1fs", request, delay)
        else:
            self.queue.forget(request)
            METRICS.reconcile_total.labels(kind=kind, result="done").inc()
            if result.rolled:
                LOGGER.info("Reconciled %s: reloaded %s", request, ", ".join(result.rolled))
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=kind).observe(
                time.monotonic() - started
            )

    def process_next(self, cancel: threading.Event, timeout: float | None = 0.5) -> bool:
        """Reconcile the next queued request; return False when none arrived."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False
        try:
            self.reconcile_request(request, cancel)  # type: ignore[arg-type]
        finally:
            self.queue.done(request)
        return True

    def _run_worker(self, cancel: threading.Event) -> None:
        while not cancel.is_set() and not self.queue.shutting_down:
            self.process_next(cancel)

    def request_stop(self) -> None:
        """Interrupt watches and workers, e.g. on leadership loss."""
        self._external_stop.set()
        for informer in self.informers:
            informer.request_stop()
        self.queue.shut_down()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run informers and workers until *shutdown_event* or :meth:`request_stop`.

        Returns early when every informer has exited on its own (for example
        after an RBAC denial), so the caller can treat it as a fatal exit.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.queue = self._new_queue()
        cancel = threading.Event()

        threads = [
            threading.Thread(
                target=informer.run_forever,
                args=(cancel,),
                name=f"informer-{informer.kind}",
                daemon=True,
            )
            for informer in self.informers
        ]
        threads.extend(
            threading.Thread(
                target=self._run_worker,
                args=(cancel,),
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            for index in range(self.settings.workers)
        )
        for thread in threads:
            thread.start()
        LOGGER.info(
            "Reloader started (kinds=%s, workers=%d, namespace=%s)",
            ",".join(str(kind) for kind in self.settings.source_kinds),
            self.settings.workers,
            self.settings.namespace or "<all>",
        )

        informer_threads = threads[: len(self.informers)]
        while not self._should_stop(stop):
            if not any(thread.is_alive() for thread in informer_threads):
                LOGGER.error("All informers exited; stopping controller")
                break
            stop.wait(timeout=0.5)

        cancel.set()
        for informer in self.informers:
            informer.request_stop()
        self.queue.shut_down()
        for thread in threads:
            thread.join(timeout=self.settings.watch_timeout_seconds + 5)
            if thread.is_alive():
                LOGGER.warning("Thread %s did not stop in time", thread.name)
        LOGGER.info("Reloader stopped")
