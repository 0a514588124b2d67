"""
Background worker driving the position exit monitor.

Every tick: for each (user, exchange) with an active strategy, load the
credentials and run one batch of exit checks. A failing pair is logged
and skipped; the loop keeps going.
"""

import asyncio
import logging
from typing import Optional

from position_monitor import PositionExitMonitor
from stores import CredentialStore, StrategyStore

logger = logging.getLogger(__name__)


class PositionMonitorWorker:

    def __init__(
        self,
        monitor: PositionExitMonitor,
        strategies: StrategyStore,
        credentials: CredentialStore,
        interval_sec: Optional[float] = None,
    ):
        self.monitor = monitor
        self.strategies = strategies
        self.credentials = credentials
        self.interval_sec = interval_sec or monitor.config.monitor_interval_sec

        self._running = False
        self.ticks = 0
        self.positions_closed = 0
        self.errors = 0

    async def start(self):
        """Start the monitoring loop"""
        if self._running:
            return

        self._running = True
        logger.info(f"[Worker] Position monitor running every {self.interval_sec:.0f}s")

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self.errors += 1
                logger.error(f"[Worker] Tick error: {e}")

            await asyncio.sleep(self.interval_sec)

    def stop(self):
        self._running = False

    async def run_once(self) -> int:
        """One pass over every (user, exchange). Returns positions closed."""
        self.ticks += 1
        strategies = await self.strategies.get_active_strategies()
        pairs = sorted({(s.user_id, s.exchange.lower()) for s in strategies})

        closed_total = 0
        for user_id, exchange in pairs:
            try:
                creds = await self.credentials.get_credentials(user_id, exchange)
                closed = await self.monitor.monitor_positions(user_id, exchange, creds)
                closed_total += len(closed)
            except Exception as e:
                self.errors += 1
                logger.error(f"[Worker] Monitoring failed for {user_id} on {exchange}: {e}")

        self.positions_closed += closed_total
        return closed_total

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "interval_sec": self.interval_sec,
            "ticks": self.ticks,
            "positions_closed": self.positions_closed,
            "errors": self.errors,
        }
