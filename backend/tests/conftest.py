"""
Pytest fixtures for the test suite.
"""
import pytest
import sys
import os
from unittest.mock import MagicMock, AsyncMock

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import EngineConfig
from deposit_monitor import DepositMonitor
from exchange_adapter import (
    AdapterRegistry,
    BuyResult,
    SellResult,
    WithdrawalResult,
    DepositStatus,
)
from models import ExchangeCredentials, Opportunity, Transfer, TransferCredentials, TransferStatus, generate_transfer_id
from retry import ConnectionHealthMonitor
from stores import SqliteTradingStore
from transfer_ledger import TransferLedger


BTC_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def make_adapter(name: str) -> MagicMock:
    """Adapter double with the happy-path BTC scenario results."""
    adapter = MagicMock()
    adapter.name = name
    adapter.buy = AsyncMock(return_value=BuyResult(
        order_id="B-1", executed_quantity=0.02, average_price=50000.0, total_cost=1000.0, fee=1.0,
    ))
    adapter.withdraw = AsyncMock(return_value=WithdrawalResult(withdrawal_id="W-1", tx_hash="0xabc"))
    adapter.check_deposit = AsyncMock(return_value=DepositStatus(
        arrived=True, amount=0.0199, confirmations=3, tx_hash="0xabc",
    ))
    adapter.sell = AsyncMock(return_value=SellResult(
        order_id="S-1", executed_quantity=0.0199, average_price=50502.51, usdt_received=1005.0, fee=1.0,
    ))
    adapter.fetch_current_price = AsyncMock(return_value=50000.0)
    return adapter


def make_transfer(opportunity, start_time, status=TransferStatus.INITIATED, completed=(), failed=None):
    """Transfer with the named steps completed and optionally one failed."""
    transfer = Transfer(id=generate_transfer_id(), opportunity=opportunity, start_time=start_time)
    for name in completed:
        transfer.steps[name].start()
        transfer.steps[name].complete({"ok": True})
    if failed:
        transfer.steps[failed].start()
        transfer.steps[failed].fail("boom")
        transfer.error = {"message": "boom", "step": failed}
    transfer.status = status
    return transfer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def health():
    return ConnectionHealthMonitor()


@pytest.fixture
def creds():
    return ExchangeCredentials(api_key="test-key", api_secret="test-secret")


@pytest.fixture
def transfer_credentials(creds):
    return TransferCredentials(source=creds, destination=creds, deposit_address=BTC_ADDRESS)


@pytest.fixture
def opportunity():
    return Opportunity(
        asset="BTC",
        source_exchange="exchange_a",
        dest_exchange="exchange_b",
        usdt_to_spend=1000.0,
        estimated_net_profit=5.0,
        estimated_transfer_time_sec=600,
    )


@pytest.fixture
def source_adapter():
    return make_adapter("exchange_a")


@pytest.fixture
def dest_adapter():
    return make_adapter("exchange_b")


@pytest.fixture
def registry(source_adapter, dest_adapter):
    return AdapterRegistry({"exchange_a": source_adapter, "exchange_b": dest_adapter})


@pytest.fixture
def engine_config():
    return EngineConfig(deposit_poll_interval_sec=10.0, deposit_max_wait_sec=3600.0, order_timeout_sec=5.0)


@pytest.fixture
def deposit_monitor(engine_config, clock, health):
    return DepositMonitor.from_config(engine_config, clock=clock, sleep=clock.sleep, health=health)


@pytest.fixture
def ledger(tmp_path):
    return TransferLedger(str(tmp_path / "transfers.db"))


@pytest.fixture
def store(tmp_path):
    return SqliteTradingStore(str(tmp_path / "trading.db"))
