"""
Deposit Monitor - polls the destination exchange until a withdrawn asset arrives.

Step 3 of a transfer. Poll errors are not fatal: they are logged and the
poll is retried after the same interval. Only the overall wait budget,
measured on a monotonic clock regardless of poll outcomes, ends the loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Optional

from config import EngineConfig
from errors import DepositTimeoutError
from exchange_adapter import ExchangeAdapter
from models import ExchangeCredentials
from retry import ConnectionHealthMonitor, connection_monitor

logger = logging.getLogger(__name__)


@dataclass
class DepositResult:
    arrived: bool
    amount: float
    confirmations: int
    tx_hash: Optional[str]
    wait_sec: float
    checks: int

    def to_dict(self) -> dict:
        return asdict(self)


class DepositMonitor:
    """Bounded polling loop over ``ExchangeAdapter.check_deposit``."""

    def __init__(
        self,
        poll_interval_sec: float = 10.0,
        max_wait_sec: float = 3600.0,
        request_timeout_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        health: Optional[ConnectionHealthMonitor] = None,
    ):
        self.poll_interval_sec = poll_interval_sec
        self.max_wait_sec = max_wait_sec
        self.request_timeout_sec = request_timeout_sec
        self._clock = clock
        self._sleep = sleep
        self._health = health or connection_monitor

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs) -> "DepositMonitor":
        return cls(
            poll_interval_sec=config.deposit_poll_interval_sec,
            max_wait_sec=config.deposit_max_wait_sec,
            request_timeout_sec=config.order_timeout_sec,
            **kwargs,
        )

    async def monitor_deposit(
        self,
        adapter: ExchangeAdapter,
        asset: str,
        credentials: ExchangeCredentials,
        tx_hash: Optional[str] = None,
    ) -> DepositResult:
        """
        Wait for ``asset`` to be credited on ``adapter``'s exchange.

        Raises:
            DepositTimeoutError: max wait elapsed without a confirmed arrival
        """
        start = self._clock()
        checks = 0

        logger.info(
            f"[Deposit] Monitoring {asset} on {adapter.name} "
            f"(every {self.poll_interval_sec:.0f}s, max {self.max_wait_sec / 60:.0f} min)"
        )

        while True:
            elapsed = self._clock() - start
            if elapsed >= self.max_wait_sec:
                break

            checks += 1
            try:
                status = await asyncio.wait_for(
                    adapter.check_deposit(asset, credentials, tx_hash),
                    timeout=self.request_timeout_sec,
                )
                self._health.mark_success(adapter.name)

                if status.arrived:
                    wait_sec = self._clock() - start
                    logger.info(
                        f"[Deposit] {status.amount} {asset} arrived on {adapter.name} "
                        f"after {wait_sec:.0f}s ({checks} checks, {status.confirmations} confirmations)"
                    )
                    return DepositResult(
                        arrived=True,
                        amount=status.amount,
                        confirmations=status.confirmations,
                        tx_hash=status.tx_hash or tx_hash,
                        wait_sec=wait_sec,
                        checks=checks,
                    )

                logger.debug(f"[Deposit] Check {checks}: {asset} not yet on {adapter.name} ({elapsed:.0f}s elapsed)")

            except Exception as e:
                self._health.mark_error(adapter.name, e)
                logger.warning(f"[Deposit] Check {checks} on {adapter.name} failed: {type(e).__name__}: {e}")

            remaining = self.max_wait_sec - (self._clock() - start)
            if remaining <= 0:
                break
            await self._sleep(min(self.poll_interval_sec, remaining))

        logger.error(f"[Deposit] Timed out waiting for {asset} on {adapter.name} after {checks} checks")
        raise DepositTimeoutError(adapter.name, asset, self.max_wait_sec, checks)
