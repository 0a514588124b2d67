"""
Tests for REST API Endpoints (server.py and routes/).

Tests cover:
- Health endpoints
- Transfer execution and inspection
- Manual position close
- Reconciliation results
"""
import pytest
import secrets
from fastapi.testclient import TestClient
from unittest.mock import patch, MagicMock, AsyncMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import routes.deps
from conftest import make_transfer
from errors import PositionCloseError, PreflightError, TransferFailedError, TransferInProgressError
from models import Mismatch, Opportunity, TransferStatus


# Test API key for authentication
TEST_API_KEY = secrets.token_urlsafe(32)

OPPORTUNITY = {
    "asset": "BTC",
    "source_exchange": "binance",
    "dest_exchange": "kraken",
    "usdt_to_spend": 1000.0,
    "estimated_net_profit": 5.0,
}

EXECUTE_BODY = {
    "user_id": "user-1",
    "opportunity": OPPORTUNITY,
    "deposit_address": "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh",
}


@pytest.fixture
def auth_headers():
    """Return auth headers for protected endpoints."""
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def mock_engine():
    """Create mock transfer engine."""
    mock = MagicMock()
    mock.is_transfer_in_progress = MagicMock(return_value=False)
    mock.get_status = MagicMock(return_value={
        "in_progress": False,
        "active_transfer_id": None,
        "completed_count": 1,
        "failed_count": 0,
        "total_profit": 5.0,
    })
    mock.get_active_transfers = MagicMock(return_value=[])
    mock.get_transfer_history = MagicMock(return_value=[])
    mock.get_transfer = MagicMock(return_value=None)
    result = MagicMock()
    result.to_dict = MagicMock(return_value={"success": True, "transfer_id": "TXF-1", "actual_profit": 5.0})
    mock.execute_transfer = AsyncMock(return_value=result)
    return mock


@pytest.fixture
def mock_credentials():
    mock = MagicMock()
    mock.get_credentials = AsyncMock(return_value=MagicMock())
    return mock


@pytest.fixture
def mock_sweep():
    mock = MagicMock()
    mock.runs = 3
    mock.last_run = 1700000000.0
    mock.last_mismatches = [Mismatch(
        kind="position_closing", exchange="binance", reference_id=7, status="CLOSING",
        age_hours=0.5, action="Check exchange", detected_at=1700000000,
    )]
    mock.run_once = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def mock_monitor():
    return MagicMock()


@pytest.fixture
def client(mock_engine, mock_credentials, mock_sweep, mock_monitor):
    state = {
        "engine": mock_engine,
        "ledger": None,
        "position_monitor": mock_monitor,
        "sweep": mock_sweep,
        "worker": None,
        "credentials": mock_credentials,
    }
    with patch("routes.deps.API_KEY", TEST_API_KEY), patch.dict(routes.deps._state, state):
        from server import app
        yield TestClient(app)


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] in ["healthy", "degraded"]
        assert data["transfer_in_progress"] is False
        assert data["reconciliation"]["mismatches"] == 1

    def test_health_without_engine(self, client):
        with patch.dict(routes.deps._state, {"engine": None}):
            response = client.get("/health")
        assert response.json()["status"] == "unhealthy"


class TestTransferEndpoints:
    """Tests for transfer API endpoints."""

    def test_requires_api_key(self, client):
        response = client.get("/api/transfers/status")
        assert response.status_code == 403

    def test_wrong_api_key(self, client):
        response = client.get("/api/transfers/status", headers={"X-API-Key": "wrong"})
        assert response.status_code == 403

    def test_status(self, client, auth_headers):
        response = client.get("/api/transfers/status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["total_profit"] == 5.0

    def test_not_initialized(self, client, auth_headers):
        with patch.dict(routes.deps._state, {"engine": None}):
            response = client.get("/api/transfers/status", headers=auth_headers)
        assert response.status_code == 503

    def test_execute_success(self, client, auth_headers, mock_engine, mock_credentials):
        response = client.post("/api/transfers/execute", json=EXECUTE_BODY, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

        opportunity, credentials = mock_engine.execute_transfer.await_args.args
        assert opportunity == Opportunity(**OPPORTUNITY)
        assert credentials.deposit_address == EXECUTE_BODY["deposit_address"]
        assert mock_credentials.get_credentials.await_count == 2

    def test_execute_while_in_progress(self, client, auth_headers, mock_engine):
        mock_engine.is_transfer_in_progress.return_value = True

        response = client.post("/api/transfers/execute", json=EXECUTE_BODY, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["retryable"] is True
        mock_engine.execute_transfer.assert_not_called()

    def test_execute_lost_race(self, client, auth_headers, mock_engine):
        mock_engine.execute_transfer.side_effect = TransferInProgressError("TXF-0")

        response = client.post("/api/transfers/execute", json=EXECUTE_BODY, headers=auth_headers)

        assert response.status_code == 409

    def test_execute_preflight_rejected(self, client, auth_headers, mock_engine):
        mock_engine.execute_transfer.side_effect = PreflightError("Invalid BTC deposit address")

        response = client.post("/api/transfers/execute", json=EXECUTE_BODY, headers=auth_headers)

        assert response.status_code == 400
        assert "deposit address" in response.json()["error"]

    def test_execute_missing_fields(self, client, auth_headers):
        response = client.post("/api/transfers/execute", json={"user_id": "user-1"}, headers=auth_headers)
        assert response.status_code == 400

    def test_execute_numeric_strings_are_coerced(self, client, auth_headers, mock_engine):
        body = dict(EXECUTE_BODY, opportunity=dict(OPPORTUNITY, usdt_to_spend="1000"))

        response = client.post("/api/transfers/execute", json=body, headers=auth_headers)

        assert response.status_code == 200
        opportunity, _ = mock_engine.execute_transfer.await_args.args
        assert opportunity.usdt_to_spend == 1000.0

    def test_execute_non_numeric_amount(self, client, auth_headers, mock_engine):
        body = dict(EXECUTE_BODY, opportunity=dict(OPPORTUNITY, usdt_to_spend="a lot"))

        response = client.post("/api/transfers/execute", json=body, headers=auth_headers)

        assert response.status_code == 400
        mock_engine.execute_transfer.assert_not_called()

    def test_execute_step_failure(self, client, auth_headers, mock_engine):
        transfer = make_transfer(
            Opportunity(**OPPORTUNITY), 1700000000.0,
            status=TransferStatus.FAILED, completed=("buy", "withdraw"), failed="monitor",
        )
        mock_engine.execute_transfer.side_effect = TransferFailedError("monitor", "Deposit timeout", transfer)

        response = client.post("/api/transfers/execute", json=EXECUTE_BODY, headers=auth_headers)

        assert response.status_code == 502
        data = response.json()
        assert data["step"] == "monitor"
        assert data["transfer"]["funds_left_source"] is True

    def test_transfer_not_found(self, client, auth_headers):
        response = client.get("/api/transfers/TXF-missing", headers=auth_headers)
        assert response.status_code == 404

    def test_history_filters_status(self, client, auth_headers, mock_engine):
        opp = Opportunity(**OPPORTUNITY)
        mock_engine.get_transfer_history.return_value = [
            make_transfer(opp, 2.0, status=TransferStatus.FAILED, failed="buy"),
            make_transfer(opp, 1.0, status=TransferStatus.COMPLETED),
        ]

        response = client.get("/api/transfers/history?status=completed", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_ledger_history_unconfigured(self, client, auth_headers):
        response = client.get("/api/transfers/history?source=ledger", headers=auth_headers)
        assert response.status_code == 404


class TestPositionEndpoints:
    """Tests for manual position actions."""

    def test_close_requires_user_and_exchange(self, client, auth_headers):
        response = client.post("/api/positions/1/close", json={"user_id": "user-1"}, headers=auth_headers)
        assert response.status_code == 400

    def test_close_sold_but_not_recorded(self, client, auth_headers, mock_monitor):
        mock_monitor.manual_close_position = AsyncMock(side_effect=PositionCloseError(
            1, "sold but close not persisted", sell_executed=True, exit_order_id="S-9",
        ))

        response = client.post(
            "/api/positions/1/close", json={"user_id": "user-1", "exchange": "binance"}, headers=auth_headers
        )

        assert response.status_code == 502
        data = response.json()
        assert data["sell_executed"] is True
        assert data["exit_order_id"] == "S-9"

    def test_close_success(self, client, auth_headers, mock_monitor):
        position = MagicMock()
        position.to_dict = MagicMock(return_value={"id": 1, "status": "CLOSED"})
        mock_monitor.manual_close_position = AsyncMock(return_value=position)

        response = client.post(
            "/api/positions/1/close", json={"user_id": "user-1", "exchange": "binance"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["position"]["status"] == "CLOSED"


class TestReconciliationEndpoints:

    def test_mismatches(self, client, auth_headers):
        response = client.get("/api/reconciliation/mismatches", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["runs"] == 3
        assert data["mismatches"][0]["kind"] == "position_closing"

    def test_run_sweep(self, client, auth_headers, mock_sweep):
        response = client.post("/api/reconciliation/run", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 0
        mock_sweep.run_once.assert_awaited_once()
