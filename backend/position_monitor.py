"""
Position Exit Monitor - evaluates open spot positions and closes them.

Close protocol:
    1. Mark the position CLOSING. If that fails, nothing is sold.
    2. Market sell the entry quantity (longer timeout than other calls).
    3. Persist exit details with bounded retry.

If step 3 exhausts its retries the position stays CLOSING with the funds
already sold; everything needed to reconcile by hand is logged at CRITICAL.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Optional, List, Tuple

from alerts import AlertNotifier
from config import PositionMonitorConfig
from errors import PositionCloseError, PositionError
from exchange_adapter import AdapterRegistry
from exit_rules import check_exit_signals
from logging_setup import RECONCILIATION_LOGGER
from models import (
    CloseDetails,
    ExchangeCredentials,
    ExitRules,
    ExitSignal,
    Position,
    PositionStatus,
)
from retry import PERSISTENCE_RETRY_CONFIG, RetryConfig, retry_async
from stores import PositionStore, StrategyStore

logger = logging.getLogger(__name__)
reconciliation_logger = logging.getLogger(RECONCILIATION_LOGGER)

DEFAULT_FEE_RATE = 0.001  # 0.1% of notional


def calculate_pnl(entry_value: float, entry_fee: float, exit_value: float, exit_fee: float) -> Tuple[float, float]:
    """Net P&L in USDT and as a percent of entry value."""
    net = (exit_value - exit_fee) - (entry_value + entry_fee)
    percent = net / entry_value * 100 if entry_value else 0.0
    return net, percent


def estimate_fee(notional: float, rate: float = DEFAULT_FEE_RATE) -> float:
    """Fallback fee when the venue did not report one."""
    return notional * rate


def base_asset(pair: str) -> str:
    return pair.split("/")[0].upper()


def _check_exchange(position: Position, exchange: str):
    # A position is only priced and sold on the venue that holds it
    if position.exchange.lower() != exchange.lower():
        raise PositionError(
            f"Position {position.id} is held on {position.exchange}, not {exchange}"
        )


class PositionExitMonitor:
    """Checks exit rules for a user's open positions on one exchange."""

    def __init__(
        self,
        registry: AdapterRegistry,
        positions: PositionStore,
        strategies: StrategyStore,
        config: Optional[PositionMonitorConfig] = None,
        evaluator: Callable[[Position, float, ExitRules], ExitSignal] = check_exit_signals,
        alerts: Optional[AlertNotifier] = None,
        sleep=asyncio.sleep,
    ):
        self.registry = registry
        self.positions = positions
        self.strategies = strategies
        self.config = config or PositionMonitorConfig()
        self.evaluator = evaluator
        self.alerts = alerts
        self._sleep = sleep
        self.retry_config = RetryConfig.from_attempts(
            attempts=self.config.close_retry_attempts,
            base_delay=self.config.close_retry_base_delay_sec,
            exponential_base=self.config.close_retry_multiplier,
            retryable_exceptions=PERSISTENCE_RETRY_CONFIG.retryable_exceptions,
        )

    # -------------------------------------------------------------------------
    # MONITORING
    # -------------------------------------------------------------------------

    async def monitor_positions(
        self,
        user_id: str,
        exchange: str,
        credentials: ExchangeCredentials,
    ) -> List[Position]:
        """Evaluate every OPEN position of (user, exchange); return those closed."""
        open_positions = await self.positions.get_open_positions(user_id, exchange)
        if not open_positions:
            logger.debug(f"[Positions] No open positions for {user_id} on {exchange}")
            return []

        logger.info(f"[Positions] Monitoring {len(open_positions)} open positions for {user_id} on {exchange}")

        closed = []
        for position in open_positions:
            try:
                signal, price = await self._check_exit(position, exchange, credentials)
                if signal.should_exit:
                    logger.info(f"[Positions] Exit signal for {position.id} {position.pair}: {signal.reason} {signal.details}")
                    closed.append(await self.close_position(position, signal.reason, price, exchange, credentials))
            except Exception as e:
                # One position never aborts the batch
                logger.error(f"[Positions] Failed to monitor position {position.id} ({position.pair}): {e}")

        if closed:
            logger.info(f"[Positions] Closed {len(closed)} positions for {user_id} on {exchange}")
        return closed

    async def _fetch_price(self, position: Position, exchange: str, credentials: ExchangeCredentials) -> float:
        adapter = self.registry.get(exchange)
        return await asyncio.wait_for(
            adapter.fetch_current_price(position.pair, credentials),
            timeout=self.config.price_timeout_sec,
        )

    async def _check_exit(
        self,
        position: Position,
        exchange: str,
        credentials: ExchangeCredentials,
    ) -> Tuple[ExitSignal, float]:
        strategy = await self.strategies.get_strategy(position.strategy_id)
        if strategy is None:
            raise PositionError(f"Strategy not found: {position.strategy_id}")

        price = await self._fetch_price(position, exchange, credentials)

        if price > (position.peak_price or position.entry_price):
            position.peak_price = price
            await self.positions.update_peak_price(position.id, price)

        return self.evaluator(position, price, strategy.exit_rules), price

    # -------------------------------------------------------------------------
    # CLOSING
    # -------------------------------------------------------------------------

    async def close_position(
        self,
        position: Position,
        reason: str,
        current_price: float,
        exchange: str,
        credentials: ExchangeCredentials,
    ) -> Position:
        """
        Close ``position`` at market.

        Raises:
            PositionCloseError: ``sell_executed`` tells whether the sell went through
        """
        cfg = self.config
        adapter = self.registry.get(exchange)

        logger.info(
            f"[Positions] Closing {position.id} {position.pair} on {exchange}: reason={reason} "
            f"entry={position.entry_price} current={current_price} qty={position.entry_quantity}"
        )

        # 1. CLOSING mark gates the sell
        try:
            await asyncio.wait_for(self.positions.mark_closing(position.id), timeout=cfg.mark_closing_timeout_sec)
        except Exception as e:
            logger.error(f"[Positions] Could not mark {position.id} CLOSING, no sell issued: {e}")
            raise PositionCloseError(position.id, f"mark CLOSING failed: {e}") from e

        # 2. Sell
        try:
            sell = await asyncio.wait_for(
                adapter.sell(base_asset(position.pair), position.entry_quantity, credentials),
                timeout=cfg.sell_timeout_sec,
            )
        except Exception as e:
            outcome = "outcome UNKNOWN (timeout)" if isinstance(e, asyncio.TimeoutError) else "not executed"
            reconciliation_logger.critical(
                f"[Positions] SELL FAILED position {position.id} {position.pair} on {exchange} "
                f"qty={position.entry_quantity}: {type(e).__name__}: {e} | {outcome} | left CLOSING"
            )
            await self._alert(
                "POSITION SELL FAILED",
                f"Position {position.id} {position.pair} on {exchange}: {e} ({outcome})",
            )
            raise PositionCloseError(position.id, f"sell failed: {e}") from e

        # 3. Compute and persist
        exit_price = sell.average_price or current_price
        exit_value = sell.usdt_received or exit_price * position.entry_quantity
        exit_fee = sell.fee if sell.fee is not None else estimate_fee(exit_value, cfg.default_fee_rate)
        entry_fee = position.entry_fee if position.entry_fee is not None else estimate_fee(
            position.entry_value_usdt, cfg.default_fee_rate
        )
        pnl_usdt, pnl_percent = calculate_pnl(position.entry_value_usdt, entry_fee, exit_value, exit_fee)

        details = CloseDetails(
            exit_price=exit_price,
            exit_quantity=position.entry_quantity,
            exit_fee=exit_fee,
            exit_reason=reason,
            exit_order_id=sell.order_id,
            exit_pnl_usdt=pnl_usdt,
            exit_pnl_percent=pnl_percent,
        )

        try:
            closed = await retry_async(
                lambda: asyncio.wait_for(
                    self.positions.close_position(position.id, details),
                    timeout=cfg.persist_timeout_sec,
                ),
                config=self.retry_config,
                name=f"persist close of position {position.id}",
                sleep=self._sleep,
            )
        except Exception as e:
            reconciliation_logger.critical(
                f"[Positions] SOLD BUT NOT RECORDED position {position.id} {position.pair} on {exchange} "
                f"user={position.user_id} | exit_price={exit_price} qty={position.entry_quantity} "
                f"exit_fee={exit_fee:.8f} order_id={sell.order_id} pnl=${pnl_usdt:+.2f} ({pnl_percent:+.2f}%) "
                f"reason={reason} | still CLOSING after {self.retry_config.max_attempts} attempts: {e}"
            )
            await self._alert(
                "POSITION CLOSE NOT RECORDED",
                f"Position {position.id} {position.pair} sold (order {sell.order_id}) but DB update failed",
            )
            raise PositionCloseError(
                position.id,
                f"sold but close not persisted: {e}",
                sell_executed=True,
                exit_order_id=sell.order_id,
            ) from e

        logger.info(
            f"[Positions] Closed {position.id} {position.pair} @ {exit_price} "
            f"P&L ${pnl_usdt:+.2f} ({pnl_percent:+.2f}%) reason={reason}"
        )

        if closed is not None:
            return closed
        return replace(
            position,
            status=PositionStatus.CLOSED,
            exit_price=exit_price,
            exit_fee=exit_fee,
            exit_reason=reason,
            exit_order_id=sell.order_id,
            exit_pnl_usdt=pnl_usdt,
            exit_pnl_percent=pnl_percent,
            exit_time=time.time(),
        )

    async def manual_close_position(
        self,
        position_id,
        user_id: str,
        exchange: str,
        credentials: ExchangeCredentials,
    ) -> Position:
        position = await self._get_owned_open_position(position_id, user_id, exchange)
        price = await self._fetch_price(position, exchange, credentials)
        return await self.close_position(position, "manual_close", price, exchange, credentials)

    async def get_current_pnl(self, position_id, exchange: str, credentials: ExchangeCredentials) -> dict:
        """Unrealized P&L of an open position at the current market price."""
        position = await self.positions.get_position(position_id)
        if position is None:
            raise PositionError(f"Position not found: {position_id}")
        if position.status != PositionStatus.OPEN:
            raise PositionError(f"Position {position_id} is {position.status.value}, not OPEN")
        _check_exchange(position, exchange)

        price = await self._fetch_price(position, exchange, credentials)
        current_value = price * position.entry_quantity
        pnl_usdt = current_value - position.entry_value_usdt
        return {
            "position_id": position.id,
            "pair": position.pair,
            "entry_price": position.entry_price,
            "entry_value": position.entry_value_usdt,
            "current_price": price,
            "current_value": current_value,
            "pnl_usdt": pnl_usdt,
            "pnl_percent": pnl_usdt / position.entry_value_usdt * 100 if position.entry_value_usdt else 0.0,
            "hours_open": round(position.hours_open(), 1),
        }

    async def _get_owned_open_position(self, position_id, user_id: str, exchange: str) -> Position:
        position = await self.positions.get_position(position_id)
        if position is None:
            raise PositionError(f"Position not found: {position_id}")
        if position.user_id != user_id:
            raise PositionError(f"Position {position_id} does not belong to user {user_id}")
        if position.status != PositionStatus.OPEN:
            raise PositionError(f"Position {position_id} is {position.status.value}, not OPEN")
        _check_exchange(position, exchange)
        return position

    async def _alert(self, title: str, message: str):
        if self.alerts:
            await self.alerts.send(title, message, logging.CRITICAL)
