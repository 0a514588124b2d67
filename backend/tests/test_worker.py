"""
Tests for the position monitor background worker.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import PositionMonitorConfig
from errors import CredentialsError
from models import ExitRules
from stores import StaticCredentialStore
from worker import PositionMonitorWorker


@pytest.fixture
def monitor():
    monitor = MagicMock()
    monitor.config = PositionMonitorConfig(monitor_interval_sec=0.0)
    monitor.monitor_positions = AsyncMock(return_value=[MagicMock()])
    return monitor


@pytest.fixture
def credentials(creds):
    return StaticCredentialStore({
        ("user-1", "binance"): creds,
        ("user-2", "kraken"): creds,
    })


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_visits_each_user_exchange_once(self, store, monitor, credentials, creds):
        store.create_strategy("user-1", "binance", ExitRules())
        store.create_strategy("user-1", "Binance", ExitRules())
        store.create_strategy("user-2", "kraken", ExitRules())
        worker = PositionMonitorWorker(monitor, store, credentials)

        closed = await worker.run_once()

        assert closed == 2
        assert [c.args for c in monitor.monitor_positions.await_args_list] == [
            ("user-1", "binance", creds),
            ("user-2", "kraken", creds),
        ]
        assert worker.get_status()["positions_closed"] == 2

    @pytest.mark.asyncio
    async def test_missing_credentials_skip_pair(self, store, monitor, credentials):
        store.create_strategy("user-1", "binance", ExitRules())
        store.create_strategy("user-3", "okx", ExitRules())
        worker = PositionMonitorWorker(monitor, store, credentials)

        closed = await worker.run_once()

        assert closed == 1
        assert worker.errors == 1

    @pytest.mark.asyncio
    async def test_monitor_failure_skips_pair(self, store, monitor, credentials):
        store.create_strategy("user-1", "binance", ExitRules())
        store.create_strategy("user-2", "kraken", ExitRules())
        monitor.monitor_positions.side_effect = [RuntimeError("exchange down"), [MagicMock(), MagicMock()]]
        worker = PositionMonitorWorker(monitor, store, credentials)

        assert await worker.run_once() == 2
        assert worker.errors == 1


class TestLoop:

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self, store, monitor, credentials):
        worker = PositionMonitorWorker(monitor, store, credentials)
        calls = []

        async def run_once():
            calls.append(1)
            if len(calls) == 1:
                raise CredentialsError("store unavailable")
            if len(calls) == 2:
                worker.stop()
            return 0

        with patch.object(worker, "run_once", side_effect=run_once):
            await asyncio.wait_for(worker.start(), timeout=5)

        assert len(calls) == 2
        assert worker.errors == 1
        assert worker.get_status()["running"] is False

    def test_interval_defaults_to_monitor_config(self, store, monitor, credentials):
        assert PositionMonitorWorker(monitor, store, credentials).interval_sec == 0.0
        assert PositionMonitorWorker(monitor, store, credentials, interval_sec=5).interval_sec == 5
