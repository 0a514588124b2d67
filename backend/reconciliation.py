"""
Reconciliation Sweep - periodic backstop for stuck positions and transfers.

Runs independently of the engine and the position monitor, which can die
mid-operation without leaving an in-memory trace. Findings are advisory:
logged on the reconciliation logger and alerted, never acted on.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, List

from alerts import AlertNotifier
from config import ReconciliationConfig
from logging_setup import RECONCILIATION_LOGGER
from models import Mismatch, Position, PositionStatus, Transfer
from stores import PositionStore, StrategyStore
from transfer_ledger import TransferLedger

logger = logging.getLogger(__name__)
reconciliation_logger = logging.getLogger(RECONCILIATION_LOGGER)


class ReconciliationSweep:

    def __init__(
        self,
        positions: PositionStore,
        strategies: StrategyStore,
        config: Optional[ReconciliationConfig] = None,
        ledger: Optional[TransferLedger] = None,
        alerts: Optional[AlertNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.positions = positions
        self.strategies = strategies
        self.config = config or ReconciliationConfig()
        self.ledger = ledger
        self.alerts = alerts
        self._clock = clock

        self._running = False
        self.runs = 0
        self.last_run: Optional[float] = None
        self.last_mismatches: List[Mismatch] = []

    async def start(self):
        """Run the sweep every ``interval_sec`` until stopped"""
        if self._running:
            return

        self._running = True
        logger.info(f"[Reconciliation] Starting sweep every {self.config.interval_sec:.0f}s")

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[Reconciliation] Sweep error: {e}")

            await asyncio.sleep(self.config.interval_sec)

    def stop(self):
        self._running = False

    async def run_once(self) -> List[Mismatch]:
        now = self._clock()
        mismatches: List[Mismatch] = []

        strategies = await self.strategies.get_active_strategies()
        exchanges = sorted({s.exchange.lower() for s in strategies})

        for exchange in exchanges:
            try:
                positions = await self.positions.get_active_positions(exchange)
            except Exception as e:
                logger.error(f"[Reconciliation] Could not load positions on {exchange}: {e}")
                continue

            for position in positions:
                mismatch = self.check_position(position, now)
                if mismatch:
                    mismatches.append(mismatch)

        if self.ledger:
            try:
                mismatches.extend(self.check_transfers(now))
            except Exception as e:
                logger.error(f"[Reconciliation] Could not read transfer ledger: {e}")

        for mismatch in mismatches:
            reconciliation_logger.warning(
                f"[Reconciliation] MISMATCH {mismatch.kind} {mismatch.exchange} ref={mismatch.reference_id} "
                f"status={mismatch.status} age={mismatch.age_hours:.2f}h -> {mismatch.action} | {mismatch.details}"
            )

        if mismatches and self.alerts:
            summary = ", ".join(f"{m.kind}:{m.reference_id}" for m in mismatches[:10])
            await self.alerts.send("RECONCILIATION", f"{len(mismatches)} mismatches: {summary}")

        self.runs += 1
        self.last_run = now
        self.last_mismatches = mismatches
        logger.info(f"[Reconciliation] Sweep {self.runs}: {len(exchanges)} exchanges, {len(mismatches)} mismatches")
        return mismatches

    def check_position(self, position: Position, now: Optional[float] = None) -> Optional[Mismatch]:
        now = self._clock() if now is None else now

        if position.status == PositionStatus.CLOSING:
            since = position.closing_at or position.entry_time
            age_sec = now - since
            if age_sec > self.config.closing_grace_sec:
                return Mismatch(
                    kind="position_closing",
                    exchange=position.exchange,
                    reference_id=position.id,
                    status=position.status.value,
                    age_hours=age_sec / 3600,
                    action="Check exchange for the sell order, then record the close or reopen the position",
                    detected_at=int(now),
                    details={"user_id": position.user_id, "pair": position.pair, "quantity": position.entry_quantity},
                )

        elif position.status == PositionStatus.OPEN:
            hours = position.hours_open(now)
            if hours > self.config.max_open_hours:
                return Mismatch(
                    kind="position_open_too_long",
                    exchange=position.exchange,
                    reference_id=position.id,
                    status=position.status.value,
                    age_hours=hours,
                    action="Review exit rules and monitor health for this position",
                    detected_at=int(now),
                    details={"user_id": position.user_id, "pair": position.pair, "strategy_id": position.strategy_id},
                )

        return None

    def check_transfers(self, now: Optional[float] = None) -> List[Mismatch]:
        """Transfers left non-terminal by a dead process, and failures that stranded funds."""
        now = self._clock() if now is None else now
        mismatches = []

        for transfer in self.ledger.get_incomplete_transfers(self.config.stale_transfer_sec, now=now):
            mismatches.append(_transfer_mismatch(
                transfer, "transfer_stuck", now,
                "Process died mid-transfer: verify each step on both exchanges",
            ))

        since = now - self.config.failed_transfer_lookback_sec
        for transfer in self.ledger.get_failed_in_flight(since=since):
            mismatches.append(_transfer_mismatch(
                transfer, "transfer_failed_in_flight", now,
                "Funds left the source exchange: locate and sell them manually",
            ))

        return mismatches


def _transfer_mismatch(transfer: Transfer, kind: str, now: float, action: str) -> Mismatch:
    opp = transfer.opportunity
    return Mismatch(
        kind=kind,
        exchange=f"{opp.source_exchange}->{opp.dest_exchange}",
        reference_id=transfer.id,
        status=transfer.status.value,
        age_hours=(now - transfer.start_time) / 3600,
        action=action,
        detected_at=int(now),
        details={
            "asset": opp.asset,
            "usdt_to_spend": opp.usdt_to_spend,
            "step": transfer.failed_step,
            "error": transfer.error,
        },
    )
