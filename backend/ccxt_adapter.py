"""
CCXT-backed exchange adapter.

One implementation for every venue CCXT supports. Spot markets quoted in
USDT only. A fresh async client is created per call so credentials never
leak between users, and it is always closed afterwards.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import ccxt
import ccxt.async_support as ccxt_async

from config import DEFAULT_WITHDRAW_NETWORK
from errors import (
    ExchangeTimeoutError,
    ExchangeTransportError,
    VenueError,
    TransferArbError,
)
from exchange_adapter import (
    ExchangeAdapter,
    BuyResult,
    SellResult,
    WithdrawalResult,
    DepositStatus,
    effective_price,
)
from models import ExchangeCredentials
from retry import READ_RETRY_CONFIG, async_retry

logger = logging.getLogger(__name__)

QUOTE = "USDT"

# Venues that accept a quote-sized market buy (spend exactly N USDT)
QUOTE_ORDER_QTY_EXCHANGES = {"binance", "bybit"}

# Deposit statuses CCXT reports once funds are credited
CREDITED_STATUSES = {"ok", "complete"}

# How far back an unmatched completed deposit still counts as ours
RECENT_DEPOSIT_WINDOW_MS = 3600 * 1000


def ccxt_supports(name: str) -> bool:
    return name.lower() in ccxt_async.exchanges


def default_client_factory(exchange_id: str, credentials: Optional[ExchangeCredentials]) -> Any:
    """Create an async CCXT client for spot trading."""
    exchange_class = getattr(ccxt_async, exchange_id)
    params = {
        "enableRateLimit": True,
        "options": {
            "defaultType": "spot",
            "adjustForTimeDifference": True,
        },
    }
    if credentials:
        params["apiKey"] = credentials.api_key
        params["secret"] = credentials.api_secret
        if credentials.api_passphrase:
            params["password"] = credentials.api_passphrase  # OKX, KuCoin
    return exchange_class(params)


def _fee_in_quote(order: dict, asset: str, price: float) -> Optional[float]:
    """Order fee converted to USDT, or None when the venue did not report one."""
    fees = order.get("fees") or ([order["fee"]] if order.get("fee") else [])
    if not fees:
        return None

    total = 0.0
    for fee in fees:
        cost = fee.get("cost")
        if cost is None:
            continue
        currency = (fee.get("currency") or QUOTE).upper()
        if currency == QUOTE:
            total += float(cost)
        elif currency == asset.upper():
            total += float(cost) * price
    return total


class CcxtExchangeAdapter(ExchangeAdapter):
    """ExchangeAdapter for any CCXT venue."""

    def __init__(
        self,
        exchange_id: str,
        client_factory: Optional[Callable[[str, Optional[ExchangeCredentials]], Any]] = None,
    ):
        self.name = exchange_id.lower()
        self._client_factory = client_factory or default_client_factory

    @asynccontextmanager
    async def _session(self, credentials: Optional[ExchangeCredentials], operation: str):
        """Yield a client and translate CCXT errors into the package taxonomy."""
        client = self._client_factory(self.name, credentials)
        try:
            yield client
        except TransferArbError:
            raise
        except ccxt.RequestTimeout as e:
            raise ExchangeTimeoutError(self.name, str(e), operation) from e
        except ccxt.NetworkError as e:
            raise ExchangeTransportError(self.name, str(e), operation) from e
        except ccxt.BaseError as e:
            raise VenueError(self.name, str(e), operation) from e
        finally:
            try:
                await client.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Client close failed: {e}")

    async def _settle(self, client: Any, order: dict, symbol: str) -> dict:
        """Market orders are usually filled at once; fetch final state if not."""
        if order.get("status") in ("closed", "filled") and order.get("filled"):
            return order
        logger.info(f"[{self.name}] Order {order.get('id')} not reported filled ({order.get('status')}), fetching")
        return await client.fetch_order(order["id"], symbol)

    # -------------------------------------------------------------------------
    # TRADING
    # -------------------------------------------------------------------------

    async def buy(self, asset: str, quote_amount: float, credentials: ExchangeCredentials) -> BuyResult:
        symbol = f"{asset}/{QUOTE}"
        async with self._session(credentials, "buy") as client:
            balance = await client.fetch_balance()
            available = float((balance.get("free") or {}).get(QUOTE) or 0)
            if available < quote_amount:
                raise VenueError(
                    self.name,
                    f"Insufficient {QUOTE} balance. Available: ${available:.2f}, Required: ${quote_amount:.2f}",
                    "buy",
                )

            await client.load_markets()
            if symbol not in client.markets:
                raise VenueError(self.name, f"Market {symbol} not available", "buy")

            if self.name in QUOTE_ORDER_QTY_EXCHANGES:
                order = await client.create_order(
                    symbol, "market", "buy", None, None, {"quoteOrderQty": quote_amount}
                )
            else:
                ticker = await client.fetch_ticker(symbol)
                price = ticker.get("last") or ticker.get("close")
                if not price:
                    raise VenueError(self.name, f"No price available for {symbol}", "buy")
                order = await client.create_order(symbol, "market", "buy", quote_amount / price)

            order = await self._settle(client, order, symbol)

        filled = float(order.get("filled") or 0)
        cost = float(order.get("cost") or 0)
        price = effective_price(order.get("average"), cost, filled)

        logger.info(f"[{self.name}] BUY {symbol} filled {filled:.8f} @ {price:.8f} (cost ${cost:.2f})")

        return BuyResult(
            order_id=str(order["id"]),
            executed_quantity=filled,
            average_price=price,
            total_cost=cost,
            fee=_fee_in_quote(order, asset, price),
        )

    async def sell(self, asset: str, base_amount: float, credentials: ExchangeCredentials) -> SellResult:
        symbol = f"{asset}/{QUOTE}"
        async with self._session(credentials, "sell") as client:
            await client.load_markets()
            if symbol not in client.markets:
                raise VenueError(self.name, f"Market {symbol} not available", "sell")

            amount = float(client.amount_to_precision(symbol, base_amount))
            order = await client.create_order(symbol, "market", "sell", amount)
            order = await self._settle(client, order, symbol)

        filled = float(order.get("filled") or 0)
        cost = float(order.get("cost") or 0)
        price = effective_price(order.get("average"), cost, filled)
        received = cost if cost else filled * price

        logger.info(f"[{self.name}] SELL {symbol} filled {filled:.8f} @ {price:.8f} (received ${received:.2f})")

        return SellResult(
            order_id=str(order["id"]),
            executed_quantity=filled,
            average_price=price,
            usdt_received=received,
            fee=_fee_in_quote(order, asset, price),
        )

    # -------------------------------------------------------------------------
    # FUNDING
    # -------------------------------------------------------------------------

    async def withdraw(
        self,
        asset: str,
        amount: float,
        destination_address: str,
        credentials: ExchangeCredentials,
        tag: Optional[str] = None,
        network: Optional[str] = None,
    ) -> WithdrawalResult:
        async with self._session(credentials, "withdraw") as client:
            balance = await client.fetch_balance()
            available = float((balance.get("free") or {}).get(asset) or 0)
            if available < amount:
                raise VenueError(
                    self.name,
                    f"Insufficient {asset} balance. Available: {available:.8f}, Required: {amount:.8f}",
                    "withdraw",
                )

            params = {}
            if tag:
                params["tag"] = tag    # XRP
                params["memo"] = tag   # XLM
            network = network or DEFAULT_WITHDRAW_NETWORK.get(asset)
            if network:
                params["network"] = network

            logger.info(
                f"[{self.name}] WITHDRAW {amount:.8f} {asset} -> {destination_address[:10]}... "
                f"(network={network or 'default'}, tag={'yes' if tag else 'no'})"
            )
            withdrawal = await client.withdraw(asset, amount, destination_address, tag, params)

        return WithdrawalResult(
            withdrawal_id=str(withdrawal["id"]) if withdrawal.get("id") is not None else None,
            tx_hash=withdrawal.get("txid"),
            fee=(withdrawal.get("fee") or {}).get("cost"),
            status=withdrawal.get("status"),
        )

    async def check_deposit(
        self,
        asset: str,
        credentials: ExchangeCredentials,
        tx_hash: Optional[str] = None,
    ) -> DepositStatus:
        async with self._session(credentials, "check_deposit") as client:
            if not client.has.get("fetchDeposits"):
                # Less reliable: any balance counts as arrived
                logger.warning(f"[{self.name}] fetchDeposits unsupported, falling back to balance check")
                balance = await client.fetch_balance()
                total = float((balance.get("total") or {}).get(asset) or 0)
                return DepositStatus(arrived=total > 0, amount=total, confirmations=0)

            deposits = await client.fetch_deposits(asset, None, 10)

        if tx_hash:
            for deposit in deposits:
                info = deposit.get("info") or {}
                deposit_hash = deposit.get("txid") or info.get("txid") or info.get("txId")
                if deposit_hash and deposit_hash.lower() == tx_hash.lower():
                    return DepositStatus(
                        arrived=deposit.get("status") in CREDITED_STATUSES,
                        amount=float(deposit.get("amount") or 0),
                        confirmations=int(info.get("confirmations") or 0),
                        tx_hash=deposit_hash,
                    )

        # No hash yet or no match: accept a recent credited deposit
        cutoff = int(time.time() * 1000) - RECENT_DEPOSIT_WINDOW_MS
        for deposit in deposits:
            if deposit.get("status") in CREDITED_STATUSES and (deposit.get("timestamp") or 0) > cutoff:
                info = deposit.get("info") or {}
                return DepositStatus(
                    arrived=True,
                    amount=float(deposit.get("amount") or 0),
                    confirmations=int(info.get("confirmations") or 0),
                    tx_hash=deposit.get("txid"),
                )

        return DepositStatus(arrived=False)

    # -------------------------------------------------------------------------
    # MARKET DATA
    # -------------------------------------------------------------------------

    @async_retry(config=READ_RETRY_CONFIG)
    async def fetch_current_price(self, pair: str, credentials: Optional[ExchangeCredentials] = None) -> float:
        async with self._session(credentials, "fetch_current_price") as client:
            ticker = await client.fetch_ticker(pair)
        price = ticker.get("last") or ticker.get("close")
        if not price:
            raise VenueError(self.name, f"No price available for {pair}", "fetch_current_price")
        return float(price)
