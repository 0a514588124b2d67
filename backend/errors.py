"""
Exception hierarchy for the transfer arbitrage core.

Exchange failures are split into transport, timeout and venue (business)
errors so diagnostics keep the distinguishing message, but the execution
engine treats all of them the same way: the current step fails.
"""

from typing import Optional, Any


class TransferArbError(Exception):
    """Root of all errors raised by this package."""
    retryable: bool = False


# ============================================================================
# EXCHANGE ERRORS
# ============================================================================

class ExchangeError(TransferArbError):
    """Any failure reported while talking to an exchange."""

    def __init__(self, exchange: str, message: str, operation: Optional[str] = None):
        self.exchange = exchange
        self.message = message
        self.operation = operation
        prefix = f"{operation} failed on {exchange}" if operation else exchange
        super().__init__(f"{prefix}: {message}")


class ExchangeTransportError(ExchangeError):
    """Network / HTTP failure reaching the exchange."""
    retryable = True


class ExchangeTimeoutError(ExchangeError):
    """An exchange call exceeded its time budget."""


class VenueError(ExchangeError):
    """The exchange rejected the request (insufficient funds, bad params, rate limit)."""


class UnsupportedExchangeError(ExchangeError):
    """No adapter implementation exists for this venue."""

    def __init__(self, exchange: str, operation: Optional[str] = None):
        super().__init__(exchange, "not supported", operation)


# ============================================================================
# TRANSFER ERRORS
# ============================================================================

class TransferInProgressError(TransferArbError):
    """Another transfer holds the single-flight lock."""
    retryable = True

    def __init__(self, active_transfer_id: Optional[str] = None):
        self.active_transfer_id = active_transfer_id
        super().__init__(
            "Transfer already in progress. Wait for completion before starting another."
        )


class PreflightError(TransferArbError):
    """Opportunity or credentials rejected before any exchange call."""


class DepositTimeoutError(TransferArbError):
    """Deposit did not arrive within the configured maximum wait."""

    def __init__(self, exchange: str, asset: str, max_wait_sec: float, checks: int):
        self.exchange = exchange
        self.asset = asset
        self.max_wait_sec = max_wait_sec
        self.checks = checks
        super().__init__(
            f"Deposit monitoring timeout - {asset} did not arrive on {exchange} "
            f"within {max_wait_sec / 60:.0f} minutes ({checks} checks)"
        )


class TransferFailedError(TransferArbError):
    """A transfer step failed. Carries the transfer record for reconciliation."""

    def __init__(self, step: str, message: str, transfer: Any = None):
        self.step = step
        self.message = message
        self.transfer = transfer
        super().__init__(f"Transfer failed at step '{step}': {message}")


class StateTransitionError(TransferArbError):
    """Illegal status transition (reverse or after a terminal state)."""


class LedgerError(TransferArbError):
    """Durable storage of a transfer record failed."""


# ============================================================================
# POSITION ERRORS
# ============================================================================

class PositionError(TransferArbError):
    """Position lookup or ownership problem."""


class PositionCloseError(TransferArbError):
    """Closing a position failed.

    ``sell_executed`` tells whether funds already left the position; when
    True the position remains CLOSING and needs manual reconciliation.
    """

    def __init__(
        self,
        position_id: Any,
        message: str,
        sell_executed: bool = False,
        exit_order_id: Optional[str] = None,
    ):
        self.position_id = position_id
        self.message = message
        self.sell_executed = sell_executed
        self.exit_order_id = exit_order_id
        super().__init__(f"Failed to close position {position_id}: {message}")


class CredentialsError(TransferArbError):
    """No usable credentials for a (user, exchange) pair."""
