"""
Configuration for the transfer arbitrage execution core.
Contains timing budgets, safety limits, and per-venue transfer capabilities.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import Optional

from retry import PERSISTENCE_RETRY_CONFIG


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# ============================================================================
# TRANSFER ENGINE
# ============================================================================

@dataclass
class EngineConfig:
    # Deposit monitoring (step 3)
    deposit_poll_interval_sec: float = 10.0
    deposit_max_wait_sec: float = 3600.0

    # Per exchange call budget for buy / withdraw / sell / deposit poll
    order_timeout_sec: float = 30.0

    # Pre-flight limits
    max_trade_usdt: float = 10000.0

    # In-memory history kept for the status API
    history_limit: int = 500

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            deposit_poll_interval_sec=_env_float("DEPOSIT_POLL_INTERVAL_SEC", 10.0),
            deposit_max_wait_sec=_env_float("DEPOSIT_MAX_WAIT_SEC", 3600.0),
            order_timeout_sec=_env_float("ORDER_TIMEOUT_SEC", 30.0),
            max_trade_usdt=_env_float("MAX_TRADE_USDT", 10000.0),
        )


# ============================================================================
# POSITION EXIT MONITOR
# ============================================================================

@dataclass
class PositionMonitorConfig:
    mark_closing_timeout_sec: float = 10.0
    sell_timeout_sec: float = 60.0          # exchange execution latency dominates
    persist_timeout_sec: float = 30.0
    price_timeout_sec: float = 15.0

    # Close persistence retry, defaulting to the shared persistence policy
    close_retry_attempts: int = PERSISTENCE_RETRY_CONFIG.max_attempts
    close_retry_base_delay_sec: float = PERSISTENCE_RETRY_CONFIG.base_delay
    close_retry_multiplier: float = PERSISTENCE_RETRY_CONFIG.exponential_base

    # Fallback when the venue does not report a fee (0.1% of notional)
    default_fee_rate: float = 0.001

    # Worker cadence
    monitor_interval_sec: float = 30.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls) -> "PositionMonitorConfig":
        return cls(
            sell_timeout_sec=_env_float("POSITION_SELL_TIMEOUT_SEC", 60.0),
            close_retry_attempts=_env_int("POSITION_CLOSE_RETRY_ATTEMPTS", PERSISTENCE_RETRY_CONFIG.max_attempts),
            close_retry_base_delay_sec=_env_float("POSITION_CLOSE_RETRY_BASE_SEC", PERSISTENCE_RETRY_CONFIG.base_delay),
            default_fee_rate=_env_float("DEFAULT_FEE_RATE", 0.001),
            monitor_interval_sec=_env_float("POSITION_MONITOR_INTERVAL_SEC", 30.0),
        )


# ============================================================================
# RECONCILIATION SWEEP
# ============================================================================

@dataclass
class ReconciliationConfig:
    interval_sec: float = 600.0             # 10 minutes
    closing_grace_sec: float = 300.0        # CLOSING longer than 5 min = stuck
    max_open_hours: float = 48.0
    stale_transfer_sec: float = 7200.0      # non-terminal transfer older than this = stuck
    failed_transfer_lookback_sec: float = 86400.0  # re-surface stranded failed transfers for a day

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        return cls(
            interval_sec=_env_float("RECONCILIATION_INTERVAL_SEC", 600.0),
            closing_grace_sec=_env_float("RECONCILIATION_CLOSING_GRACE_SEC", 300.0),
            max_open_hours=_env_float("RECONCILIATION_MAX_OPEN_HOURS", 48.0),
            stale_transfer_sec=_env_float("RECONCILIATION_STALE_TRANSFER_SEC", 7200.0),
            failed_transfer_lookback_sec=_env_float("RECONCILIATION_FAILED_LOOKBACK_SEC", 86400.0),
        )


# ============================================================================
# ALERTS
# ============================================================================

@dataclass
class AlertConfig:
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    timeout_sec: float = 10.0

    @classmethod
    def from_env(cls) -> "AlertConfig":
        return cls(
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL"),
        )


@dataclass
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    positions: PositionMonitorConfig = field(default_factory=PositionMonitorConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    db_path: str = "trading.db"
    log_dir: str = "logs"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            engine=EngineConfig.from_env(),
            positions=PositionMonitorConfig.from_env(),
            reconciliation=ReconciliationConfig.from_env(),
            alerts=AlertConfig.from_env(),
            db_path=os.getenv("TRADING_DB_PATH", "trading.db"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )


# ============================================================================
# TRANSFER ASSETS
# ============================================================================

# Assets suited to transfer arbitrage (fast, low fees). Times in minutes.
TRANSFER_CRYPTOS = {
    # Tier 1: fast & cheap
    "XRP": {"name": "Ripple", "avg_transfer_min": 3, "confirmations": 1, "tier": 1},
    "XLM": {"name": "Stellar", "avg_transfer_min": 5, "confirmations": 1, "tier": 1},
    "TRX": {"name": "Tron", "avg_transfer_min": 3, "confirmations": 1, "tier": 1},

    # Tier 2: medium speed
    "LTC": {"name": "Litecoin", "avg_transfer_min": 15, "confirmations": 3, "tier": 2},
    "BCH": {"name": "Bitcoin Cash", "avg_transfer_min": 15, "confirmations": 3, "tier": 2},
    "DOGE": {"name": "Dogecoin", "avg_transfer_min": 10, "confirmations": 6, "tier": 2},

    # Tier 3: stablecoins
    "USDT": {"name": "Tether (TRC20)", "avg_transfer_min": 3, "confirmations": 1, "tier": 3},
    "USDC": {"name": "USD Coin", "avg_transfer_min": 5, "confirmations": 12, "tier": 3},

    # Tier 4: slow & expensive
    "BTC": {"name": "Bitcoin", "avg_transfer_min": 30, "confirmations": 3, "tier": 4},
    "ETH": {"name": "Ethereum", "avg_transfer_min": 10, "confirmations": 12, "tier": 4},
}

# Assets whose deposits are credited by tag/memo - withdrawing without one loses funds
TAG_REQUIRED_ASSETS = {"XRP", "XLM"}

# Default withdrawal network per asset when the venue needs one
DEFAULT_WITHDRAW_NETWORK = {"USDT": "TRC20"}


# ============================================================================
# VENUE CAPABILITIES
# ============================================================================

EXCHANGE_CRYPTO_SUPPORT = {
    "valr": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "BCH"],
        "has_usdt": True,
    },
    "luno": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "BCH"],
        "has_usdt": True,
    },
    "binance": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "BCH", "TRX", "XLM", "DOGE", "USDT", "USDC"],
        "has_usdt": True,
    },
    "bybit": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "USDT"],
        "has_usdt": True,
    },
    "kraken": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "BCH", "XLM", "USDT"],
        "has_usdt": True,
    },
    "okx": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "XLM", "USDT", "USDC"],
        "has_usdt": True,
    },
    "mexc": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "XLM", "DOGE", "USDT"],
        "has_usdt": True,
    },
    "kucoin": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "XLM", "USDT", "USDC"],
        "has_usdt": True,
    },
    "htx": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "USDT"],
        "has_usdt": True,
    },
    "gateio": {
        "supports": ["BTC", "ETH", "XRP", "LTC", "TRX", "XLM", "DOGE", "USDT", "USDC"],
        "has_usdt": True,
    },
    "gemini": {
        "supports": ["BTC", "ETH", "LTC", "BCH"],
        "has_usdt": False,  # USD quoted
    },
}


def find_common_cryptos(exchange1: str, exchange2: str) -> list[str]:
    """Assets supported on both venues."""
    ex1 = EXCHANGE_CRYPTO_SUPPORT.get(exchange1.lower())
    ex2 = EXCHANGE_CRYPTO_SUPPORT.get(exchange2.lower())
    if not ex1 or not ex2:
        return []
    return [c for c in ex1["supports"] if c in ex2["supports"]]


def is_viable_route(crypto: str, from_exchange: str, to_exchange: str) -> bool:
    """Both venues list the asset and both trade it against USDT."""
    if crypto not in find_common_cryptos(from_exchange, to_exchange):
        return False
    src = EXCHANGE_CRYPTO_SUPPORT[from_exchange.lower()]
    dst = EXCHANGE_CRYPTO_SUPPORT[to_exchange.lower()]
    return src["has_usdt"] and dst["has_usdt"]
