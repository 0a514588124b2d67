"""
Core data types for transfer arbitrage execution and spot position exits.

Pure data only - no exchange or storage access lives here.
"""

import secrets
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Any

from errors import StateTransitionError


# ============================================================================
# OPPORTUNITY / CREDENTIALS
# ============================================================================

@dataclass(frozen=True)
class Opportunity:
    """A decided cross-exchange price discrepancy. Immutable once handed over."""
    asset: str                        # "BTC", "XRP", ...
    source_exchange: str              # where we buy
    dest_exchange: str                # where we sell
    usdt_to_spend: float
    estimated_net_profit: float = 0.0
    estimated_transfer_time_sec: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Opportunity":
        """Raises KeyError/TypeError on missing fields, ValueError on non-numeric amounts."""
        return cls(
            asset=str(data["asset"]),
            source_exchange=str(data["source_exchange"]),
            dest_exchange=str(data["dest_exchange"]),
            usdt_to_spend=float(data["usdt_to_spend"]),
            estimated_net_profit=float(data.get("estimated_net_profit", 0.0)),
            estimated_transfer_time_sec=float(data.get("estimated_transfer_time_sec", 0.0)),
        )


@dataclass(frozen=True)
class ExchangeCredentials:
    """Decrypted API credentials for one (user, exchange)."""
    api_key: str
    api_secret: str
    api_passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"ExchangeCredentials(api_key='{self.api_key[:4]}...')"


@dataclass(frozen=True)
class TransferCredentials:
    """Everything the engine needs to move funds between two venues."""
    source: ExchangeCredentials
    destination: ExchangeCredentials
    deposit_address: str
    deposit_tag: Optional[str] = None  # XRP destination tag / XLM memo
    network: Optional[str] = None      # e.g. "TRC20" for USDT


# ============================================================================
# TRANSFER
# ============================================================================

class TransferStatus(Enum):
    INITIATED = "INITIATED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED)


_TRANSFER_ORDER = {
    TransferStatus.INITIATED: 0,
    TransferStatus.IN_TRANSIT: 1,
    TransferStatus.COMPLETED: 2,
    TransferStatus.FAILED: 2,
}


class StepStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TRANSFER_STEPS = ("buy", "withdraw", "monitor", "sell")


@dataclass
class TransferStep:
    status: StepStatus = StepStatus.PENDING
    result: Optional[dict] = None
    error: Optional[str] = None

    def start(self) -> None:
        if self.status != StepStatus.PENDING:
            raise StateTransitionError(f"Cannot start step in status {self.status.value}")
        self.status = StepStatus.IN_PROGRESS

    def complete(self, result: dict) -> None:
        if self.status != StepStatus.IN_PROGRESS:
            raise StateTransitionError(f"Cannot complete step in status {self.status.value}")
        self.status = StepStatus.COMPLETED
        self.result = result

    def fail(self, error: str) -> None:
        if self.status != StepStatus.IN_PROGRESS:
            raise StateTransitionError(f"Cannot fail step in status {self.status.value}")
        self.status = StepStatus.FAILED
        self.error = error

    def to_dict(self) -> dict:
        return {"status": self.status.value, "result": self.result, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "TransferStep":
        return cls(
            status=StepStatus(data["status"]),
            result=data.get("result"),
            error=data.get("error"),
        )


def generate_transfer_id() -> str:
    """TXF-<epoch ms>-<8 hex chars>, never reused."""
    return f"TXF-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class Transfer:
    """One execution attempt of an opportunity."""
    id: str
    opportunity: Opportunity
    status: TransferStatus = TransferStatus.INITIATED
    steps: dict = field(default_factory=lambda: {name: TransferStep() for name in TRANSFER_STEPS})
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    actual_profit: Optional[float] = None
    actual_profit_percent: Optional[float] = None
    error: Optional[dict] = None  # {"message": ..., "step": ...}

    def set_status(self, status: TransferStatus) -> None:
        """Move forward only. Terminal states are final."""
        if self.status.is_terminal:
            raise StateTransitionError(
                f"Transfer {self.id} already {self.status.value}, cannot become {status.value}"
            )
        if _TRANSFER_ORDER[status] < _TRANSFER_ORDER[self.status]:
            raise StateTransitionError(
                f"Transfer {self.id} cannot go back from {self.status.value} to {status.value}"
            )
        self.status = status

    def finish(self, status: TransferStatus) -> None:
        if not status.is_terminal:
            raise StateTransitionError(f"{status.value} is not a terminal status")
        self.set_status(status)
        self.end_time = time.time()

    @property
    def failed_step(self) -> Optional[str]:
        for name, step in self.steps.items():
            if step.error or step.status in (StepStatus.IN_PROGRESS, StepStatus.FAILED):
                return name
        return None

    @property
    def funds_left_source(self) -> bool:
        """True once a withdrawal was issued - funds are no longer on the source venue."""
        return self.steps["withdraw"].status == StepStatus.COMPLETED

    @property
    def duration_sec(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "opportunity": self.opportunity.to_dict(),
            "status": self.status.value,
            "steps": {name: step.to_dict() for name, step in self.steps.items()},
            "start_time": self.start_time,
            "end_time": self.end_time,
            "actual_profit": self.actual_profit,
            "actual_profit_percent": self.actual_profit_percent,
            "error": self.error,
            "funds_left_source": self.funds_left_source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transfer":
        return cls(
            id=data["id"],
            opportunity=Opportunity.from_dict(data["opportunity"]),
            status=TransferStatus(data["status"]),
            steps={name: TransferStep.from_dict(s) for name, s in data["steps"].items()},
            start_time=data["start_time"],
            end_time=data.get("end_time"),
            actual_profit=data.get("actual_profit"),
            actual_profit_percent=data.get("actual_profit_percent"),
            error=data.get("error"),
        )


@dataclass
class TransferResult:
    """Returned by a successful execute_transfer call."""
    success: bool
    transfer_id: str
    actual_profit: float
    actual_profit_percent: float
    duration_sec: float
    steps: dict

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# POSITIONS
# ============================================================================

class PositionStatus(Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"  # sell may be in flight - never sell again
    CLOSED = "CLOSED"


@dataclass
class Position:
    """A spot position held on one exchange."""
    id: Any
    user_id: str
    exchange: str
    pair: str                       # "BTC/USDT"
    status: PositionStatus
    entry_price: float
    entry_quantity: float
    entry_value_usdt: float
    entry_time: float               # unix seconds
    entry_fee: float = 0.0
    strategy_id: Optional[Any] = None
    closing_at: Optional[float] = None
    peak_price: Optional[float] = None
    exit_price: Optional[float] = None
    exit_fee: Optional[float] = None
    exit_reason: Optional[str] = None
    exit_order_id: Optional[str] = None
    exit_pnl_usdt: Optional[float] = None
    exit_pnl_percent: Optional[float] = None
    exit_time: Optional[float] = None

    def hours_open(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return (now - self.entry_time) / 3600

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class ExitRules:
    """Strategy-defined exit conditions. Percentages are whole numbers (5 = 5%)."""
    take_profit_percent: Optional[float] = None
    take_profit_mode: str = "auto"           # "auto" or "manual"
    stop_loss_percent: Optional[float] = None
    trailing_stop_percent: Optional[float] = None
    max_hold_time_hours: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ExitRules":
        data = data or {}
        return cls(
            take_profit_percent=data.get("take_profit_percent", data.get("takeProfitPercent")),
            take_profit_mode=data.get("take_profit_mode", data.get("takeProfitMode", "auto")),
            stop_loss_percent=data.get("stop_loss_percent", data.get("stopLossPercent")),
            trailing_stop_percent=data.get("trailing_stop_percent", data.get("trailingStopPercent")),
            max_hold_time_hours=data.get("max_hold_time_hours", data.get("maxHoldTimeHours")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Strategy:
    id: Any
    user_id: str
    exchange: str
    exit_rules: ExitRules
    is_active: bool = True
    name: str = ""


@dataclass
class ExitSignal:
    should_exit: bool
    reason: Optional[str] = None
    details: str = ""
    pnl_percent: Optional[float] = None


@dataclass
class CloseDetails:
    """What gets persisted when a position is closed."""
    exit_price: float
    exit_quantity: float
    exit_fee: float
    exit_reason: str
    exit_order_id: Optional[str]
    exit_pnl_usdt: float
    exit_pnl_percent: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Mismatch:
    """A position or transfer stuck in an intermediate state."""
    kind: str                 # "position_closing", "position_open_too_long", "transfer_stuck", "transfer_failed_in_flight"
    exchange: str
    reference_id: Any
    status: str
    age_hours: float
    action: str
    detected_at: int = field(default_factory=lambda: int(time.time()))
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
