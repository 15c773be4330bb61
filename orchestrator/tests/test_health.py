from __future__ import annotations

import urllib.error
import urllib.request

from orchestrator.src.health import start_health_server
from orchestrator.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    def setup_method(self) -> None:
        self.pending: list[str] | None = None
        self.server = start_health_server(lambda: self.pending, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_before_bootstrap(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "initialised=false"

    def test_readyz_lists_pending_kinds(self) -> None:
        self.pending = ["volumeattachment", "configmap"]

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 503
        assert body == "pending=configmap,volumeattachment"

    def test_readyz_when_all_feeds_synced(self) -> None:
        self.pending = []

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 200
        assert body == "ready=true"

    def test_metrics_exposes_orchestrator_metrics(self) -> None:
        METRICS.watch_events_total.labels(kind="node", event="added").inc()

        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "csi_orchestrator_watch_events_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404
