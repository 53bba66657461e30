from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from reloader.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def default_identity() -> str:
    """Return this replica's lease identity, the pod name where available."""
    return os.getenv("POD_NAME", os.getenv("HOSTNAME", "unknown"))


class LeaseLeaderElector:
    """Leader election over a ``coordination.k8s.io/v1`` Lease.

    Only the leader runs informers and workers, so two replicas never race
    each other stamping the same workloads.  Every ``retry_period_seconds``
    the elector tries to create, renew or take over the Lease.  A Lease held
    by someone else is taken over once ``renewTime + leaseDurationSeconds``
    has passed.  A leader that cannot renew for ``renew_deadline_seconds``
    steps down.  ``409 Conflict`` on create or replace means another
    replica won that round.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.is_leader = False

    def _expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election round; True means we hold the Lease afterwards."""
        now = datetime.now(UTC)
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            return self._write(
                V1Lease(
                    metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                    spec=V1LeaseSpec(),
                ),
                now,
                create=True,
            )

        spec = lease.spec or V1LeaseSpec()
        held_by_other = spec.holder_identity not in (None, self.identity)
        if held_by_other and not self._expired(spec, now):
            return False
        lease.spec = spec
        return self._write(lease, now, create=False)

    def _write(self, lease: V1Lease, now: datetime, *, create: bool) -> bool:
        spec = lease.spec
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            if create:
                self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
            else:
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lost race for lease %s", self.lease_name)
            else:
                LOGGER.warning("Failed to write lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear the holder so another replica can take over without waiting."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _transition(self, leading: bool) -> None:
        self.is_leader = leading
        METRICS.leader_state.set(1 if leading else 0)
        METRICS.leader_transitions_total.labels(
            transition="acquired" if leading else "lost"
        ).inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewal = time.monotonic()

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election round")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self.is_leader:
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    self._transition(True)
                    on_started_leading()
            elif self.is_leader:
                silent_for = time.monotonic() - last_renewal
                if silent_for >= self.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", silent_for)
                    self._transition(False)
                    on_stopped_leading()
                else:
                    LOGGER.warning("Lease renewal failed; still leader for now")
            stop_event.wait(timeout=self.retry_period_seconds)

        if self.is_leader:
            self.release()
            self._transition(False)
            on_stopped_leading()
