from __future__ import annotations

import re
from unittest.mock import MagicMock

import pytest

from reloader.src.errors import Conflict, StoreError
from reloader.src.rollout import RolloutTrigger, utc_now_rfc3339
from reloader.src.settings import ReloaderSettings
from reloader.src.store import KubeObjectStore
from reloader.src.workloads import Workload, WorkloadKind
from reloader.tests.fakes import FakeCluster, make_workload


def _read(cluster: FakeCluster, kind: WorkloadKind = WorkloadKind.DEPLOYMENT) -> Workload:
    store = KubeObjectStore(core_api=cluster, apps_api=cluster)
    (workload,) = store.list_by_label("ns1", {}, kind)
    return workload


def test_utc_now_rfc3339_format() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_now_rfc3339())


@pytest.mark.parametrize("kind", list(WorkloadKind))
def test_trigger_stamps_template_and_records_event(kind: WorkloadKind) -> None:
    cluster = FakeCluster()
    cluster.add_workload(kind, make_workload(kind))
    recorder = MagicMock()
    trigger = RolloutTrigger(
        KubeObjectStore(core_api=cluster, apps_api=cluster),
        recorder,
        ReloaderSettings(),
        now_fn=lambda: "2026-01-01T00:00:00Z",
    )

    timestamp = trigger.trigger(_read(cluster, kind))

    assert timestamp == "2026-01-01T00:00:00Z"
    assert cluster.template_annotations(kind, "ns1", "app") == {
        "reloader/rolloutAt": "2026-01-01T00:00:00Z"
    }
    recorder.record.assert_called_once()
    args = recorder.record.call_args.args
    assert args[1:3] == ("Normal", "Reloaded")
    assert args[3] % args[4:] == f"{kind} app reloaded"


def test_trigger_uses_configured_annotation_key() -> None:
    cluster = FakeCluster()
    cluster.add_workload(WorkloadKind.DEPLOYMENT, make_workload())
    trigger = RolloutTrigger(
        KubeObjectStore(core_api=cluster, apps_api=cluster),
        MagicMock(),
        ReloaderSettings(rollout_annotation_key="example.com/restartedAt"),
        now_fn=lambda: "2026-01-01T00:00:00Z",
    )

    trigger.trigger(_read(cluster))

    annotations = cluster.template_annotations(WorkloadKind.DEPLOYMENT, "ns1", "app")
    assert annotations == {"example.com/restartedAt": "2026-01-01T00:00:00Z"}


def test_stale_read_raises_conflict_without_event() -> None:
    cluster = FakeCluster()
    cluster.add_workload(WorkloadKind.DEPLOYMENT, make_workload())
    recorder = MagicMock()
    store = KubeObjectStore(core_api=cluster, apps_api=cluster)
    trigger = RolloutTrigger(store, recorder, ReloaderSettings())
    stale = _read(cluster)
    trigger.trigger(_read(cluster))

    with pytest.raises(Conflict):
        trigger.trigger(stale)

    assert recorder.record.call_count == 1


def test_api_failure_propagates() -> None:
    cluster = FakeCluster()
    cluster.add_workload(WorkloadKind.DEPLOYMENT, make_workload())
    cluster.inject_status[(WorkloadKind.DEPLOYMENT, "app")] = [503]
    recorder = MagicMock()
    trigger = RolloutTrigger(
        KubeObjectStore(core_api=cluster, apps_api=cluster), recorder, ReloaderSettings()
    )

    with pytest.raises(StoreError) as excinfo:
        trigger.trigger(_read(cluster))

    assert excinfo.value.status == 503
    recorder.record.assert_not_called()


def test_repeated_triggers_produce_increasing_timestamps() -> None:
    cluster = FakeCluster()
    cluster.add_workload(WorkloadKind.DEPLOYMENT, make_workload())
    stamps = iter(["2026-01-01T00:00:00Z", "2026-01-01T00:00:05Z"])
    trigger = RolloutTrigger(
        KubeObjectStore(core_api=cluster, apps_api=cluster),
        MagicMock(),
        ReloaderSettings(),
        now_fn=lambda: next(stamps),
    )

    first = trigger.trigger(_read(cluster))
    second = trigger.trigger(_read(cluster))

    assert second > first
    assert cluster.template_annotations(WorkloadKind.DEPLOYMENT, "ns1", "app") == {
        "reloader/rolloutAt": second
    }
