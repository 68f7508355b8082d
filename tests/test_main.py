"""Tests for the HTTP trigger surface."""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from http.server import ThreadingHTTPServer
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx

from volatility_guardian.exceptions import ConfigurationError
from volatility_guardian.main import make_handler
from volatility_guardian.market_data.service import BatchFetchResult
from volatility_guardian.market_hours import MarketHoursGate
from volatility_guardian.models import BatchRunStatus, Region, RunState


def run_status(manual=False, state=RunState.DONE) -> BatchRunStatus:
    return BatchRunStatus(
        run_id="run-1",
        manual=manual,
        started_at=datetime(2025, 3, 4, 15, 0, tzinfo=timezone.utc),
        state=state,
    )


class TestHttpTrigger:

    def setup_method(self):
        self.orchestrator = MagicMock()
        self.orchestrator.run_batch.side_effect = lambda manual=False: run_status(manual=manual)
        self.market_data = MagicMock()
        self.fetched = []

        def batch_fetch(pairs):
            self.fetched = list(pairs)
            return BatchFetchResult(prices={s: Decimal("10.5") for s, _ in self.fetched})

        self.market_data.batch_fetch.side_effect = batch_fetch

        svc = SimpleNamespace(orchestrator=self.orchestrator, market_data=self.market_data, gate=MarketHoursGate())
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), make_handler(svc, cron_secret="s3cret"))
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address
        self.client = httpx.Client(base_url=f"http://{host}:{port}", timeout=5)

    def teardown_method(self):
        self.client.close()
        self.server.shutdown()
        self.server.server_close()

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_unknown_path(self):
        assert self.client.get("/nope").status_code == 404

    def test_market_status(self):
        body = self.client.get("/market/status", params={"region": "india"}).json()
        assert set(body) == {"INDIA"}
        assert "is_open" in body["INDIA"]

    def test_market_status_all_regions(self):
        assert set(self.client.get("/market/status").json()) == {"US", "INDIA"}

    def test_market_status_bad_region(self):
        assert self.client.get("/market/status", params={"region": "MARS"}).status_code == 400

    def test_batch_run_requires_secret(self):
        response = self.client.post("/batch/run")
        assert response.status_code == 401
        self.orchestrator.run_batch.assert_not_called()

    def test_manual_batch_run_from_query(self):
        response = self.client.post(
            "/batch/run", params={"manual": "true"}, headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status_code == 200
        assert response.json()["manual"] is True
        self.orchestrator.run_batch.assert_called_once_with(manual=True)

    def test_manual_batch_run_from_body(self):
        response = self.client.post(
            "/batch/run", json={"manual": True}, headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status_code == 200
        self.orchestrator.run_batch.assert_called_once_with(manual=True)

    def test_scheduled_batch_run(self):
        self.client.post("/batch/run", headers={"Authorization": "Bearer s3cret"})
        self.orchestrator.run_batch.assert_called_once_with(manual=False)

    def test_failed_run_is_500(self):
        self.orchestrator.run_batch.side_effect = lambda manual=False: run_status(state=RunState.ERROR)
        response = self.client.post("/batch/run", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 500
        assert response.json()["state"] == "error"

    def test_prices(self):
        response = self.client.get("/prices", params={"symbols": "AAPL, MSFT", "region": "US"})

        assert response.status_code == 200
        assert response.json()["prices"] == {"AAPL": "10.5", "MSFT": "10.5"}
        assert {region for _, region in self.fetched} == {Region.US}

    def test_prices_requires_symbols(self):
        assert self.client.get("/prices").status_code == 400

    def test_prices_unconfigured(self):
        self.market_data.batch_fetch.side_effect = ConfigurationError("No US quote source configured")
        assert self.client.get("/prices", params={"symbols": "AAPL"}).status_code == 500
