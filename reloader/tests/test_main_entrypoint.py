from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from reloader.src.__main__ import JSONFormatter, main, redact_sensitive_text, resolve_settings
from reloader.src.settings import SettingsError
from reloader.tests.fakes import make_config_map


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_merges_structured_fields(self) -> None:
        record = self._make_record(msg="Reloaded Deployment ns1/app")
        record.fields = {"kind": "Deployment", "workload": "app", "msg": "ignored"}

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["kind"] == "Deployment"
        assert parsed["workload"] == "app"
        assert parsed["msg"] == "Reloaded Deployment ns1/app"

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message

    def test_redaction_leaves_plain_text_alone(self) -> None:
        assert redact_sensitive_text("Reloaded Deployment ns1/app") == "Reloaded Deployment ns1/app"


class TestResolveSettings:
    """Settings come from the environment unless a settings ConfigMap is named."""

    def test_environment_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        monkeypatch.setenv("WORKERS", "4")

        settings, watcher = resolve_settings(MagicMock(), on_change=lambda: None)

        assert settings.workers == 4
        assert watcher is None

    def test_settings_configmap_overrides_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SETTINGS_CONFIGMAP", "reloader-settings")
        monkeypatch.setenv("SETTINGS_NAMESPACE", "reloader")
        monkeypatch.setenv("WORKERS", "4")
        core_api = MagicMock()
        core_api.read_namespaced_config_map.return_value = make_config_map(
            data={"config": "workers: 8\nreloadSecrets: false\n"}
        )
        on_change = MagicMock()

        settings, watcher = resolve_settings(core_api, on_change=on_change)

        core_api.read_namespaced_config_map.assert_called_once_with(
            name="reloader-settings", namespace="reloader"
        )
        assert settings.workers == 8
        assert settings.reload_secrets is False
        assert watcher is not None
        assert watcher.on_change is on_change

    def test_invalid_settings_document_fails_startup(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SETTINGS_CONFIGMAP", "reloader-settings")
        core_api = MagicMock()
        core_api.read_namespaced_config_map.return_value = make_config_map(
            data={"config": "labelKey: 'not a valid key!'\n"}
        )

        with pytest.raises(SettingsError, match="label_key"):
            resolve_settings(core_api, on_change=lambda: None)


def _blocking_controller() -> MagicMock:
    """A controller whose run_forever blocks until request_stop or shutdown."""
    stopped = threading.Event()
    controller = MagicMock()
    controller.is_ready.return_value = True

    def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
        if shutdown_event is not None:
            shutdown_event.set()
            return
        stopped.wait(timeout=5)

    controller.run_forever.side_effect = fake_run_forever
    controller.request_stop.side_effect = stopped.set
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_without_leader_election(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        controller = _blocking_controller()

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "reloader.src.__main__.ReloadController", return_value=controller
            ) as mock_controller_cls,
            patch("reloader.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        controller.run_forever.assert_called_once()
        assert mock_controller_cls.call_args.kwargs["settings"].leader_election is False
        assert mock_health.call_args.kwargs["leader"] is None
        assert mock_health.call_args.kwargs["is_ready"] == controller.is_ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_passes_leader_event_when_election_enabled(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        monkeypatch.setenv("LEADER_ELECTION_LEASE_DURATION_SECONDS", "20")
        monkeypatch.setenv("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", "12")
        monkeypatch.setenv("LEADER_ELECTION_RETRY_PERIOD_SECONDS", "3")
        controller = _blocking_controller()
        mock_elector = MagicMock()

        def fake_elector_run(
            *,
            on_started_leading: Callable[[], None],
            on_stopped_leading: Callable[[], None],
            stop_event: threading.Event,
        ) -> None:
            on_started_leading()
            on_stopped_leading()
            assert not stop_event.is_set()
            stop_event.set()

        mock_elector.run.side_effect = fake_elector_run

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.ReloadController", return_value=controller),
            patch("reloader.src.__main__.start_health_server") as mock_health,
            patch("reloader.src.leader.default_identity", return_value="reloader-0"),
            patch(
                "reloader.src.leader.LeaseLeaderElector", return_value=mock_elector
            ) as mock_elector_cls,
            patch("kubernetes.client.CoordinationV1Api", return_value=SimpleNamespace()),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert isinstance(mock_health.call_args.kwargs["leader"], threading.Event)
        assert mock_elector.run.call_count == 1
        ctor_kwargs = mock_elector_cls.call_args.kwargs
        assert ctor_kwargs["identity"] == "reloader-0"
        assert ctor_kwargs["lease_duration_seconds"] == 20
        assert ctor_kwargs["renew_deadline_seconds"] == 12
        assert ctor_kwargs["retry_period_seconds"] == 3
        controller.run_forever.assert_called_once()
        controller.request_stop.assert_called()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_shuts_down_when_controller_exits_unexpectedly(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        controller = MagicMock()
        controller.run_forever.return_value = None
        mock_elector = MagicMock()
        observed: list[bool] = []

        def fake_elector_run(
            *,
            on_started_leading: Callable[[], None],
            on_stopped_leading: Callable[[], None],
            stop_event: threading.Event,
        ) -> None:
            on_started_leading()
            observed.append(stop_event.wait(timeout=2))

        mock_elector.run.side_effect = fake_elector_run

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.ReloadController", return_value=controller),
            patch("reloader.src.__main__.start_health_server", return_value=MagicMock()),
            patch("reloader.src.leader.LeaseLeaderElector", return_value=mock_elector),
            patch("kubernetes.client.CoordinationV1Api", return_value=SimpleNamespace()),
        ):
            main()

        assert observed == [True]

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.ReloadController", return_value=_blocking_controller()),
            patch("reloader.src.__main__.start_health_server", return_value=MagicMock()),
            patch("reloader.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            pytest.raises(SettingsError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

    def test_main_rejects_invalid_leader_timing_relationship(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.delenv("SETTINGS_CONFIGMAP", raising=False)
        monkeypatch.setenv("LEADER_ELECTION_LEASE_DURATION_SECONDS", "10")
        monkeypatch.setenv("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", "10")

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            pytest.raises(SettingsError, match="renew_deadline_seconds must be smaller"),
        ):
            main()
