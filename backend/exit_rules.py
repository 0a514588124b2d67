"""
Default exit-signal evaluator for spot positions.

Pure function of (position, price, rules, now). Checked in priority order:
take profit (auto mode only), stop loss, trailing stop, max hold time.
"""

import time
from typing import Optional

from models import ExitRules, ExitSignal, Position


def pnl_percent(entry_price: float, current_price: float) -> float:
    if not entry_price:
        return 0.0
    return (current_price - entry_price) / entry_price * 100


def check_exit_signals(
    position: Position,
    current_price: float,
    rules: ExitRules,
    now: Optional[float] = None,
) -> ExitSignal:
    pnl = pnl_percent(position.entry_price, current_price)
    hours_open = position.hours_open(time.time() if now is None else now)

    # Manual mode: the user takes profit themselves
    if rules.take_profit_mode == "auto" and rules.take_profit_percent and pnl >= rules.take_profit_percent:
        return ExitSignal(
            should_exit=True,
            reason="take_profit",
            details=f"+{pnl:.2f}% (Target: {rules.take_profit_percent}%)",
            pnl_percent=pnl,
        )

    if rules.stop_loss_percent and pnl <= -rules.stop_loss_percent:
        return ExitSignal(
            should_exit=True,
            reason="stop_loss",
            details=f"{pnl:.2f}% (Max Loss: {rules.stop_loss_percent}%)",
            pnl_percent=pnl,
        )

    if rules.trailing_stop_percent and position.peak_price and position.peak_price > position.entry_price:
        drawdown = (position.peak_price - current_price) / position.peak_price * 100
        if drawdown >= rules.trailing_stop_percent:
            return ExitSignal(
                should_exit=True,
                reason="trailing_stop",
                details=f"-{drawdown:.2f}% from peak {position.peak_price} (Trail: {rules.trailing_stop_percent}%)",
                pnl_percent=pnl,
            )

    if rules.max_hold_time_hours and hours_open >= rules.max_hold_time_hours:
        return ExitSignal(
            should_exit=True,
            reason="max_hold_time",
            details=f"{hours_open:.1f}h (Max: {rules.max_hold_time_hours}h)",
            pnl_percent=pnl,
        )

    return ExitSignal(should_exit=False, details=f"{pnl:+.2f}% after {hours_open:.1f}h", pnl_percent=pnl)
