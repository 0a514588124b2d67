"""
Exchange Adapter Module - the capability contract every venue integration implements.

The execution engine and position monitor only ever talk to ExchangeAdapter.
New venues are added by registering an adapter, never by branching on
exchange names in the engine.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Optional

from errors import UnsupportedExchangeError
from models import ExchangeCredentials

logger = logging.getLogger(__name__)


@dataclass
class BuyResult:
    """Market buy sized in quote currency (USDT)."""
    order_id: str
    executed_quantity: float
    average_price: float
    total_cost: float
    fee: Optional[float] = None     # in USDT when known

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SellResult:
    """Market sell sized in base currency."""
    order_id: str
    executed_quantity: float
    average_price: float
    usdt_received: float
    fee: Optional[float] = None     # in USDT when known

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WithdrawalResult:
    withdrawal_id: Optional[str]
    tx_hash: Optional[str] = None   # may only be known later
    fee: Optional[float] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DepositStatus:
    arrived: bool
    amount: float = 0.0
    confirmations: int = 0
    tx_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def effective_price(average_price: Optional[float], quote_amount: float, base_amount: float) -> float:
    """Venue-reported average price, else quote / base."""
    if average_price:
        return float(average_price)
    if base_amount:
        return quote_amount / base_amount
    return 0.0


class ExchangeAdapter(ABC):
    """Base class for per-exchange integrations."""

    name: str = "base"

    @abstractmethod
    async def buy(self, asset: str, quote_amount: float, credentials: ExchangeCredentials) -> BuyResult:
        """Market buy ``asset`` spending ``quote_amount`` USDT."""
        pass

    @abstractmethod
    async def sell(self, asset: str, base_amount: float, credentials: ExchangeCredentials) -> SellResult:
        """Market sell ``base_amount`` of ``asset`` for USDT."""
        pass

    @abstractmethod
    async def withdraw(
        self,
        asset: str,
        amount: float,
        destination_address: str,
        credentials: ExchangeCredentials,
        tag: Optional[str] = None,
        network: Optional[str] = None,
    ) -> WithdrawalResult:
        """Withdraw ``amount`` of ``asset`` to a pre-registered address."""
        pass

    @abstractmethod
    async def check_deposit(
        self,
        asset: str,
        credentials: ExchangeCredentials,
        tx_hash: Optional[str] = None,
    ) -> DepositStatus:
        """Report whether an incoming deposit of ``asset`` has been credited."""
        pass

    @abstractmethod
    async def fetch_current_price(self, pair: str, credentials: Optional[ExchangeCredentials] = None) -> float:
        """Last traded price for ``pair`` (e.g. "BTC/USDT")."""
        pass


class UnsupportedExchangeAdapter(ExchangeAdapter):
    """
    Fails closed for venues without an implementation.

    Every operation raises instead of silently doing nothing.
    """

    def __init__(self, name: str):
        self.name = name

    async def buy(self, asset, quote_amount, credentials):
        raise UnsupportedExchangeError(self.name, "buy")

    async def sell(self, asset, base_amount, credentials):
        raise UnsupportedExchangeError(self.name, "sell")

    async def withdraw(self, asset, amount, destination_address, credentials, tag=None, network=None):
        raise UnsupportedExchangeError(self.name, "withdraw")

    async def check_deposit(self, asset, credentials, tx_hash=None):
        raise UnsupportedExchangeError(self.name, "check_deposit")

    async def fetch_current_price(self, pair, credentials=None):
        raise UnsupportedExchangeError(self.name, "fetch_current_price")


class AdapterRegistry:
    """Maps exchange names to adapters. Unknown venues get a fail-closed adapter."""

    def __init__(self, adapters: Optional[dict[str, ExchangeAdapter]] = None):
        self._adapters: dict[str, ExchangeAdapter] = {}
        for name, adapter in (adapters or {}).items():
            self.register(name, adapter)

    def register(self, name: str, adapter: ExchangeAdapter) -> None:
        self._adapters[name.lower()] = adapter
        logger.debug(f"[Adapters] Registered adapter for {name}")

    def get(self, name: str) -> ExchangeAdapter:
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            logger.warning(f"[Adapters] No adapter for '{name}' - operations will fail closed")
            return UnsupportedExchangeAdapter(name)
        return adapter

    def supports(self, name: str) -> bool:
        return name.lower() in self._adapters

    @property
    def exchanges(self) -> list[str]:
        return sorted(self._adapters)


def create_registry(exchange_names: list[str]) -> AdapterRegistry:
    """
    Build a registry backed by CCXT for every listed venue that CCXT knows.

    Venues CCXT does not know are left unregistered and fail closed.
    """
    from ccxt_adapter import CcxtExchangeAdapter, ccxt_supports

    registry = AdapterRegistry()
    for name in exchange_names:
        if ccxt_supports(name):
            registry.register(name, CcxtExchangeAdapter(name))
        else:
            logger.warning(f"[Adapters] {name} is not available in CCXT - not registered")
    return registry
