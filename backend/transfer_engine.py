"""
Transfer Execution Engine - buy, withdraw, monitor deposit, sell.

Drives one opportunity through the transfer pipeline:
    1. Market buy on the source exchange, sized in USDT
    2. Withdraw the bought quantity to the destination deposit address
    3. Wait for the deposit to be credited on the destination exchange
    4. Market sell the received amount
    5. Record realized profit

At most one transfer runs per engine instance; a concurrent call fails fast.
There is no rollback: a failure after the buy leaves funds wherever they
are, and the transfer record (persisted before every step) says where.
"""

import asyncio
import logging
from collections import deque
from typing import Optional, List

from alerts import AlertNotifier
from config import EngineConfig
from deposit_monitor import DepositMonitor
from errors import (
    ExchangeTimeoutError,
    TransferFailedError,
    TransferInProgressError,
    VenueError,
)
from exchange_adapter import AdapterRegistry, ExchangeAdapter
from logging_setup import RECONCILIATION_LOGGER
from models import (
    Opportunity,
    StepStatus,
    Transfer,
    TransferCredentials,
    TransferResult,
    TransferStatus,
    generate_transfer_id,
)
from preflight import check_transfer
from retry import connection_monitor
from transfer_ledger import TransferLedger

logger = logging.getLogger(__name__)
reconciliation_logger = logging.getLogger(RECONCILIATION_LOGGER)

# Failures at these steps happen after the buy; funds need manual recovery
RECONCILIATION_STEPS = ("withdraw", "monitor", "sell")


class TransferExecutionEngine:
    """
    Single-flight executor for transfer arbitrage opportunities.

    The engine only talks to ExchangeAdapter instances resolved from the
    registry; it never branches on exchange names.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        config: Optional[EngineConfig] = None,
        ledger: Optional[TransferLedger] = None,
        deposit_monitor: Optional[DepositMonitor] = None,
        alerts: Optional[AlertNotifier] = None,
    ):
        self.registry = registry
        self.config = config or EngineConfig()
        self.ledger = ledger
        self.deposit_monitor = deposit_monitor or DepositMonitor.from_config(self.config)
        self.alerts = alerts

        self._lock = asyncio.Lock()
        self._current_id: Optional[str] = None
        self._active: dict[str, Transfer] = {}
        self._history: deque = deque(maxlen=self.config.history_limit)

        logger.info(
            f"[Engine] Initialized (exchanges={registry.exchanges}, "
            f"ledger={'sqlite' if ledger else 'memory'})"
        )

    # -------------------------------------------------------------------------
    # EXECUTION
    # -------------------------------------------------------------------------

    async def execute_transfer(
        self,
        opportunity: Opportunity,
        credentials: TransferCredentials,
    ) -> TransferResult:
        """
        Execute one opportunity end to end.

        Raises:
            TransferInProgressError: another transfer is running (nothing was touched)
            PreflightError: opportunity rejected before any exchange call
            TransferFailedError: a step failed; ``.transfer`` holds the partial record
        """
        # Acquiring a free asyncio.Lock does not yield, so check-then-acquire is atomic
        if self._lock.locked():
            logger.warning(f"[Engine] Rejected {opportunity.asset} transfer: {self._current_id} in progress")
            raise TransferInProgressError(self._current_id)

        async with self._lock:
            check_transfer(
                opportunity, credentials, self.config.max_trade_usdt, self.config.deposit_max_wait_sec
            )

            transfer = Transfer(id=generate_transfer_id(), opportunity=opportunity)
            self._current_id = transfer.id
            self._active[transfer.id] = transfer

            logger.info(
                f"[Engine] {transfer.id} START {opportunity.asset} "
                f"{opportunity.source_exchange} -> {opportunity.dest_exchange} "
                f"${opportunity.usdt_to_spend:.2f} (est. profit ${opportunity.estimated_net_profit:.2f})"
            )
            try:
                return await self._run(transfer, credentials)
            finally:
                self._current_id = None

    async def _run(self, transfer: Transfer, credentials: TransferCredentials) -> TransferResult:
        opp = transfer.opportunity
        source = self.registry.get(opp.source_exchange)
        dest = self.registry.get(opp.dest_exchange)

        step = "buy"
        try:
            # Step 1: buy on source
            self._begin_step(transfer, step)
            buy = await self._bounded(
                source, step, source.buy(opp.asset, opp.usdt_to_spend, credentials.source)
            )
            if buy.executed_quantity <= 0:
                raise VenueError(source.name, "buy executed zero quantity", step)
            transfer.steps[step].complete(buy.to_dict())
            logger.info(
                f"[Engine] {transfer.id} BUY {buy.executed_quantity:.8f} {opp.asset} "
                f"@ {buy.average_price:.8f} (order {buy.order_id})"
            )

            # Step 2: withdraw to destination
            step = "withdraw"
            self._begin_step(transfer, step)
            withdrawal = await self._bounded(
                source, step, source.withdraw(
                    opp.asset,
                    buy.executed_quantity,
                    credentials.deposit_address,
                    credentials.source,
                    tag=credentials.deposit_tag,
                    network=credentials.network,
                )
            )
            if not (withdrawal.tx_hash or withdrawal.withdrawal_id):
                raise VenueError(source.name, "withdrawal returned no identifier", step)
            transfer.steps[step].complete(withdrawal.to_dict())
            transfer.set_status(TransferStatus.IN_TRANSIT)
            logger.info(
                f"[Engine] {transfer.id} WITHDRAW {buy.executed_quantity:.8f} {opp.asset} "
                f"(id={withdrawal.withdrawal_id}, tx={withdrawal.tx_hash})"
            )

            # Step 3: wait for the deposit
            step = "monitor"
            self._begin_step(transfer, step)
            deposit = await self.deposit_monitor.monitor_deposit(
                dest, opp.asset, credentials.destination, withdrawal.tx_hash
            )
            transfer.steps[step].complete(deposit.to_dict())

            # Step 4: sell what actually arrived
            step = "sell"
            self._begin_step(transfer, step)
            sell = await self._bounded(
                dest, step, dest.sell(opp.asset, deposit.amount, credentials.destination)
            )
            transfer.steps[step].complete(sell.to_dict())

        except Exception as e:
            await self._fail(transfer, step, e)
            raise TransferFailedError(step, str(e), transfer) from e

        # Step 5: finalize
        transfer.actual_profit = sell.usdt_received - opp.usdt_to_spend
        transfer.actual_profit_percent = transfer.actual_profit / opp.usdt_to_spend * 100
        transfer.finish(TransferStatus.COMPLETED)
        self._checkpoint_terminal(transfer)
        self._archive(transfer)

        logger.info(
            f"[Engine] {transfer.id} COMPLETED profit ${transfer.actual_profit:+.2f} "
            f"({transfer.actual_profit_percent:+.3f}%) in {transfer.duration_sec:.0f}s"
        )

        return TransferResult(
            success=True,
            transfer_id=transfer.id,
            actual_profit=transfer.actual_profit,
            actual_profit_percent=transfer.actual_profit_percent,
            duration_sec=transfer.duration_sec,
            steps={name: s.to_dict() for name, s in transfer.steps.items()},
        )

    async def _bounded(self, adapter: ExchangeAdapter, operation: str, call):
        """Await one adapter call within the order timeout, recording connection health."""
        timeout = self.config.order_timeout_sec
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            connection_monitor.mark_error(adapter.name, e)
            raise ExchangeTimeoutError(adapter.name, f"no response within {timeout:.0f}s", operation) from e
        except Exception as e:
            connection_monitor.mark_error(adapter.name, e)
            raise
        connection_monitor.mark_success(adapter.name)
        return result

    # -------------------------------------------------------------------------
    # BOOKKEEPING
    # -------------------------------------------------------------------------

    def _begin_step(self, transfer: Transfer, step: str):
        """Mark the step IN_PROGRESS and persist before any adapter call."""
        transfer.steps[step].start()
        if self.ledger:
            self.ledger.save_transfer(transfer)

    def _checkpoint_terminal(self, transfer: Transfer):
        # Funds already moved; a lost terminal write must not mask the outcome
        if not self.ledger:
            return
        try:
            self.ledger.save_transfer(transfer)
        except Exception as e:
            reconciliation_logger.critical(
                f"[Engine] {transfer.id} terminal state {transfer.status.value} NOT PERSISTED: {e} | "
                f"record={transfer.to_dict()}"
            )

    def _archive(self, transfer: Transfer):
        self._active.pop(transfer.id, None)
        self._history.appendleft(transfer)

    async def _fail(self, transfer: Transfer, step: str, error: Exception):
        message = str(error) or type(error).__name__
        step_record = transfer.steps[step]
        if step_record.status == StepStatus.IN_PROGRESS:
            step_record.fail(message)
        else:
            step_record.error = message

        transfer.error = {"message": message, "step": step}
        if not transfer.status.is_terminal:
            transfer.finish(TransferStatus.FAILED)
        self._checkpoint_terminal(transfer)
        self._archive(transfer)

        opp = transfer.opportunity
        if step in RECONCILIATION_STEPS:
            completed = {
                name: s.result for name, s in transfer.steps.items() if s.status == StepStatus.COMPLETED
            }
            reconciliation_logger.critical(
                f"[Engine] RECONCILIATION REQUIRED {transfer.id} failed at {step}: {message} | "
                f"{opp.asset} {opp.source_exchange} -> {opp.dest_exchange} ${opp.usdt_to_spend:.2f} | "
                f"funds_left_source={transfer.funds_left_source} | completed={completed}"
            )
            await self._alert(
                "RECONCILIATION REQUIRED",
                f"{transfer.id} {opp.asset} failed at {step}: {message} "
                f"(funds left {opp.source_exchange}: {'yes' if transfer.funds_left_source else 'no'})",
                logging.CRITICAL,
            )
        else:
            logger.error(f"[Engine] {transfer.id} FAILED at {step}: {message}")
            await self._alert("TRANSFER FAILED", f"{transfer.id} {opp.asset} failed at {step}: {message}")

    async def _alert(self, title: str, message: str, level: int = logging.WARNING):
        if self.alerts:
            await self.alerts.send(title, message, level)

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def is_transfer_in_progress(self) -> bool:
        return self._lock.locked()

    def get_active_transfers(self) -> List[Transfer]:
        return list(self._active.values())

    def get_transfer_history(self, limit: int = 50) -> List[Transfer]:
        """Finished transfers of this process, newest first."""
        return list(self._history)[:limit]

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        if transfer_id in self._active:
            return self._active[transfer_id]
        for transfer in self._history:
            if transfer.id == transfer_id:
                return transfer
        if self.ledger:
            return self.ledger.get_transfer(transfer_id)
        return None

    def get_status(self) -> dict:
        history = list(self._history)
        completed = [t for t in history if t.status == TransferStatus.COMPLETED]
        failed = [t for t in history if t.status == TransferStatus.FAILED]
        return {
            "in_progress": self.is_transfer_in_progress(),
            "active_transfer_id": self._current_id,
            "active_count": len(self._active),
            "history_count": len(history),
            "completed_count": len(completed),
            "failed_count": len(failed),
            "total_profit": round(sum(t.actual_profit or 0 for t in completed), 2),
            "exchanges": self.registry.exchanges,
            "config": self.config.to_dict(),
        }
