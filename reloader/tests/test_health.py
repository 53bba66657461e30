from __future__ import annotations

import threading
import urllib.error
import urllib.request

from reloader.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServerWithLeadership:
    """Readiness requires synced informers and, with election enabled, leadership."""

    def setup_method(self) -> None:
        self.synced = threading.Event()
        self.leader = threading.Event()
        self.server = start_health_server(
            is_ready=self.synced.is_set, port=0, leader=self.leader
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def test_healthz_always_returns_200(self) -> None:
        assert _get(f"{self.base_url}/healthz") == (200, "ok")

    def test_readyz_returns_503_when_not_synced(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "synced=false" in body

    def test_readyz_returns_503_when_synced_but_not_leader(self) -> None:
        self.synced.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "leader=false" in body

    def test_readyz_returns_200_when_synced_and_leader(self) -> None:
        self.synced.set()
        self.leader.set()
        assert _get(f"{self.base_url}/readyz") == (200, "synced=true leader=true")

    def test_readyz_returns_503_after_leadership_lost(self) -> None:
        self.synced.set()
        self.leader.set()
        self.leader.clear()
        assert _get(f"{self.base_url}/readyz")[0] == 503

    def test_leadz_tracks_leadership(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (503, "not leader")
        self.leader.set()
        assert _get(f"{self.base_url}/leadz") == (200, "ok")

    def test_metrics_endpoint_exposes_reloader_metrics(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "config_reloader_queue_depth" in body

    def test_unknown_path_returns_404(self) -> None:
        assert _get(f"{self.base_url}/nope")[0] == 404


class TestHealthServerWithoutLeadership:
    def setup_method(self) -> None:
        self.synced = threading.Event()
        self.server = start_health_server(is_ready=self.synced.is_set, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def test_readyz_only_needs_sync(self) -> None:
        assert _get(f"{self.base_url}/readyz")[0] == 503
        self.synced.set()
        assert _get(f"{self.base_url}/readyz") == (200, "synced=true leader=true")

    def test_leadz_is_always_ok(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (200, "ok")
