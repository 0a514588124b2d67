"""
Tests for the position exit monitor close protocol.
"""

import logging
import time

import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_adapter
from errors import PositionCloseError, PositionError
from exchange_adapter import AdapterRegistry, SellResult
from models import ExitRules, Position, PositionStatus, Strategy
from position_monitor import PositionExitMonitor, calculate_pnl, estimate_fee, base_asset


def make_position(position_id=1, **overrides) -> Position:
    data = dict(
        id=position_id,
        user_id="user-1",
        exchange="binance",
        pair="BTC/USDT",
        status=PositionStatus.OPEN,
        entry_price=100.0,
        entry_quantity=1.0,
        entry_value_usdt=100.0,
        entry_time=time.time() - 3600,
        entry_fee=0.1,
        strategy_id=7,
        peak_price=100.0,
    )
    data.update(overrides)
    return Position(**data)


def mock_store(positions=None):
    store = MagicMock()
    store.mark_closing = AsyncMock(return_value=None)
    store.close_position = AsyncMock(return_value=None)
    store.get_open_positions = AsyncMock(return_value=positions or [])
    store.get_position = AsyncMock(return_value=None)
    store.update_peak_price = AsyncMock(return_value=None)
    return store


def mock_strategies(rules: ExitRules):
    strategies = MagicMock()
    strategies.get_strategy = AsyncMock(return_value=Strategy(id=7, user_id="user-1", exchange="binance", exit_rules=rules))
    return strategies


@pytest.fixture
def adapter():
    adapter = make_adapter("binance")
    adapter.fetch_current_price = AsyncMock(return_value=106.0)
    adapter.sell = AsyncMock(return_value=SellResult(
        order_id="S-9", executed_quantity=1.0, average_price=106.0, usdt_received=106.0, fee=0.106,
    ))
    return adapter


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_monitor(adapter, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def factory(store, strategies=None, **kwargs):
        return PositionExitMonitor(
            AdapterRegistry({"binance": adapter}),
            store,
            strategies or mock_strategies(ExitRules(take_profit_percent=5)),
            sleep=fake_sleep,
            **kwargs,
        )
    return factory


# ============================================================================
# P&L HELPERS
# ============================================================================

def test_calculate_pnl_includes_both_fees():
    net, percent = calculate_pnl(1000.0, 1.0, 1050.0, 1.05)

    assert net == pytest.approx(47.95)
    assert percent == pytest.approx(4.795)


def test_calculate_pnl_zero_entry_value():
    assert calculate_pnl(0.0, 0.0, 10.0, 0.0) == (10.0, 0.0)


def test_estimate_fee_defaults_to_tenth_of_a_percent():
    assert estimate_fee(1000.0) == pytest.approx(1.0)
    assert estimate_fee(1000.0, rate=0.002) == pytest.approx(2.0)


def test_base_asset():
    assert base_asset("eth/usdt") == "ETH"


# ============================================================================
# CLOSE PROTOCOL
# ============================================================================

class TestClosePosition:

    @pytest.mark.asyncio
    async def test_no_sell_when_mark_closing_fails(self, make_monitor, adapter):
        store = mock_store()
        store.mark_closing.side_effect = PositionError("Position 1 is not OPEN")
        monitor = make_monitor(store)

        with pytest.raises(PositionCloseError) as exc_info:
            await monitor.close_position(make_position(), "take_profit", 106.0, "binance", None)

        assert exc_info.value.sell_executed is False
        adapter.sell.assert_not_called()
        store.close_position.assert_not_called()

    @pytest.mark.asyncio
    async def test_marks_closing_before_selling(self, make_monitor, adapter):
        events = []
        store = mock_store()
        store.mark_closing.side_effect = lambda position_id: events.append("mark_closing")

        async def sell(*args, **kwargs):
            events.append("sell")
            return SellResult("S-9", 1.0, 106.0, 106.0, fee=0.106)

        async def close(position_id, details):
            events.append("close")

        adapter.sell.side_effect = sell
        store.close_position.side_effect = close

        await make_monitor(store).close_position(make_position(), "take_profit", 106.0, "binance", None)

        assert events == ["mark_closing", "sell", "close"]
        adapter.sell.assert_awaited_once_with("BTC", 1.0, None)

    @pytest.mark.asyncio
    async def test_sell_failure_leaves_position_closing(self, make_monitor, adapter, caplog):
        store = mock_store()
        adapter.sell.side_effect = RuntimeError("exchange down")

        with caplog.at_level(logging.CRITICAL, logger="reconciliation"):
            with pytest.raises(PositionCloseError) as exc_info:
                await make_monitor(store).close_position(make_position(), "stop_loss", 90.0, "binance", None)

        assert exc_info.value.sell_executed is False
        store.mark_closing.assert_awaited_once()
        store.close_position.assert_not_called()
        assert any("SELL FAILED" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_persist_retries_then_reports_sold_but_not_recorded(self, make_monitor, sleeps, caplog):
        store = mock_store()
        store.close_position.side_effect = RuntimeError("database is locked")
        alerts = MagicMock()
        alerts.send = AsyncMock()

        with caplog.at_level(logging.CRITICAL, logger="reconciliation"):
            with pytest.raises(PositionCloseError) as exc_info:
                await make_monitor(store, alerts=alerts).close_position(
                    make_position(), "take_profit", 106.0, "binance", None
                )

        assert store.close_position.await_count == 3
        assert sleeps == [2.0, 4.0]
        assert exc_info.value.sell_executed is True
        assert exc_info.value.exit_order_id == "S-9"

        critical = [r.message for r in caplog.records if r.levelno == logging.CRITICAL]
        assert any("SOLD BUT NOT RECORDED" in m and "S-9" in m for m in critical)
        assert alerts.send.await_args.args[0] == "POSITION CLOSE NOT RECORDED"

    @pytest.mark.asyncio
    async def test_persist_succeeds_on_second_attempt(self, make_monitor, sleeps):
        store = mock_store()
        store.close_position.side_effect = [RuntimeError("database is locked"), None]

        closed = await make_monitor(store).close_position(make_position(), "take_profit", 106.0, "binance", None)

        assert store.close_position.await_count == 2
        assert sleeps == [2.0]
        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_order_id == "S-9"

    @pytest.mark.asyncio
    async def test_persisted_details(self, make_monitor):
        store = mock_store()

        await make_monitor(store).close_position(make_position(), "take_profit", 106.0, "binance", None)

        position_id, details = store.close_position.await_args.args
        assert position_id == 1
        assert details.exit_reason == "take_profit"
        assert details.exit_fee == pytest.approx(0.106)
        assert details.exit_pnl_usdt == pytest.approx(5.794)
        assert details.exit_pnl_percent == pytest.approx(5.794)

    @pytest.mark.asyncio
    async def test_missing_sell_fee_is_estimated(self, make_monitor, adapter):
        store = mock_store()
        adapter.sell.return_value = SellResult("S-9", 1.0, 106.0, 106.0, fee=None)

        await make_monitor(store).close_position(make_position(), "take_profit", 106.0, "binance", None)

        details = store.close_position.await_args.args[1]
        assert details.exit_fee == pytest.approx(0.106)


# ============================================================================
# MONITORING
# ============================================================================

class TestMonitorPositions:

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, make_monitor, adapter):
        first, second = make_position(1), make_position(2)
        store = mock_store([first, second])
        store.mark_closing.side_effect = [PositionError("not OPEN"), None]

        closed = await make_monitor(store).monitor_positions("user-1", "binance", None)

        assert [p.id for p in closed] == [2]
        assert adapter.sell.await_count == 1

    @pytest.mark.asyncio
    async def test_no_signal_no_close(self, make_monitor, adapter):
        adapter.fetch_current_price.return_value = 101.0
        store = mock_store([make_position()])

        closed = await make_monitor(store).monitor_positions("user-1", "binance", None)

        assert closed == []
        adapter.sell.assert_not_called()
        store.update_peak_price.assert_awaited_once_with(1, 101.0)

    @pytest.mark.asyncio
    async def test_missing_strategy_skips_position(self, make_monitor, adapter):
        strategies = MagicMock()
        strategies.get_strategy = AsyncMock(return_value=None)
        store = mock_store([make_position()])

        closed = await make_monitor(store, strategies).monitor_positions("user-1", "binance", None)

        assert closed == []
        adapter.sell.assert_not_called()

    @pytest.mark.asyncio
    async def test_custom_evaluator(self, make_monitor, adapter):
        from models import ExitSignal

        evaluator = MagicMock(return_value=ExitSignal(should_exit=True, reason="custom"))
        store = mock_store([make_position()])

        closed = await make_monitor(store, evaluator=evaluator).monitor_positions("user-1", "binance", None)

        assert closed[0].exit_reason == "custom"
        evaluator.assert_called_once()


class TestSqliteEndToEnd:

    @pytest.mark.asyncio
    async def test_take_profit_closes_and_records(self, make_monitor, store):
        strategy = store.create_strategy("user-1", "binance", ExitRules(take_profit_percent=5))
        position = store.create_position(
            "user-1", "binance", "BTC/USDT", entry_price=100.0, entry_quantity=1.0,
            entry_fee=0.1, strategy_id=strategy.id,
        )

        closed = await make_monitor(store, store).monitor_positions("user-1", "binance", None)

        assert len(closed) == 1
        record = await store.get_position(position.id)
        assert record.status == PositionStatus.CLOSED
        assert record.exit_reason == "take_profit"
        assert record.exit_order_id == "S-9"
        assert record.exit_pnl_usdt == pytest.approx(5.794)
        assert await store.get_open_positions("user-1", "binance") == []

    @pytest.mark.asyncio
    async def test_second_close_is_rejected(self, make_monitor, store, adapter):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 1.0)
        monitor = make_monitor(store, store)

        await monitor.close_position(position, "manual_close", 106.0, "binance", None)
        with pytest.raises(PositionCloseError):
            await monitor.close_position(position, "manual_close", 106.0, "binance", None)

        assert adapter.sell.await_count == 1


class TestManualClose:

    @pytest.mark.asyncio
    async def test_rejects_other_users_position(self, make_monitor, store, adapter):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 1.0)

        with pytest.raises(PositionError):
            await make_monitor(store, store).manual_close_position(position.id, "user-2", "binance", None)

        adapter.sell.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_position_held_on_other_exchange(self, make_monitor, store, adapter):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 1.0)
        kraken = make_adapter("kraken")
        monitor = make_monitor(store, store)
        monitor.registry.register("kraken", kraken)

        with pytest.raises(PositionError, match="held on binance"):
            await monitor.manual_close_position(position.id, "user-1", "kraken", None)

        kraken.sell.assert_not_called()
        adapter.sell.assert_not_called()
        assert (await store.get_position(position.id)).status == PositionStatus.OPEN

    @pytest.mark.asyncio
    async def test_current_pnl_rejects_other_exchange(self, make_monitor, store):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 1.0)

        with pytest.raises(PositionError):
            await make_monitor(store, store).get_current_pnl(position.id, "kraken", None)

    @pytest.mark.asyncio
    async def test_manual_close_reason(self, make_monitor, store):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 1.0)

        closed = await make_monitor(store, store).manual_close_position(position.id, "user-1", "binance", None)

        assert closed.exit_reason == "manual_close"
        assert closed.status == PositionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_current_pnl(self, make_monitor, store):
        position = store.create_position("user-1", "binance", "BTC/USDT", 100.0, 2.0)

        pnl = await make_monitor(store, store).get_current_pnl(position.id, "binance", None)

        assert pnl["current_value"] == pytest.approx(212.0)
        assert pnl["pnl_usdt"] == pytest.approx(12.0)
        assert pnl["pnl_percent"] == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_current_pnl_unknown_position(self, make_monitor, store):
        with pytest.raises(PositionError):
            await make_monitor(store, store).get_current_pnl(999, "binance", None)
