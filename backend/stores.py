"""
Collaborator interfaces consumed by the core, plus SQLite and env-backed
implementations.

The position store is the row-level guard against double closes:
mark_closing only succeeds for a position that is still OPEN.
"""

import asyncio
import json
import logging
import os
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Optional, List

from errors import CredentialsError, PositionError
from models import (
    CloseDetails,
    ExchangeCredentials,
    ExitRules,
    Position,
    PositionStatus,
    Strategy,
)

logger = logging.getLogger(__name__)


# ============================================================================
# CREDENTIALS
# ============================================================================

class CredentialStore(ABC):
    """Returns decrypted credentials. Encryption at rest is the store's concern."""

    @abstractmethod
    async def get_credentials(self, user_id: str, exchange: str) -> ExchangeCredentials:
        pass


class EnvCredentialStore(CredentialStore):
    """
    Single-tenant store reading <EXCHANGE>_API_KEY / _API_SECRET / _API_PASSPHRASE.

    The user id is ignored; every user maps to the same account.
    """

    async def get_credentials(self, user_id: str, exchange: str) -> ExchangeCredentials:
        prefix = exchange.upper()
        api_key = os.getenv(f"{prefix}_API_KEY")
        api_secret = os.getenv(f"{prefix}_API_SECRET")
        if not api_key or not api_secret:
            raise CredentialsError(f"{prefix}_API_KEY and {prefix}_API_SECRET must be set")
        return ExchangeCredentials(
            api_key=api_key,
            api_secret=api_secret,
            api_passphrase=os.getenv(f"{prefix}_API_PASSPHRASE") or None,
        )


class StaticCredentialStore(CredentialStore):
    """In-process map of (user_id, exchange) -> credentials."""

    def __init__(self, credentials: Optional[dict] = None):
        self._credentials = {
            (user_id, exchange.lower()): creds
            for (user_id, exchange), creds in (credentials or {}).items()
        }

    def set_credentials(self, user_id: str, exchange: str, credentials: ExchangeCredentials):
        self._credentials[(user_id, exchange.lower())] = credentials

    async def get_credentials(self, user_id: str, exchange: str) -> ExchangeCredentials:
        creds = self._credentials.get((user_id, exchange.lower()))
        if creds is None:
            raise CredentialsError(f"No credentials for user {user_id} on {exchange}")
        return creds


# ============================================================================
# POSITIONS / STRATEGIES
# ============================================================================

class PositionStore(ABC):

    @abstractmethod
    async def mark_closing(self, position_id) -> None:
        """OPEN -> CLOSING. Raises PositionError if the position is not OPEN."""
        pass

    @abstractmethod
    async def close_position(self, position_id, details: CloseDetails) -> Position:
        """CLOSING -> CLOSED with exit details."""
        pass

    @abstractmethod
    async def get_open_positions(self, user_id: str, exchange: str) -> List[Position]:
        pass

    @abstractmethod
    async def get_active_positions(self, exchange: str) -> List[Position]:
        """OPEN and CLOSING positions of every user on ``exchange``."""
        pass

    @abstractmethod
    async def get_position(self, position_id) -> Optional[Position]:
        pass

    async def update_peak_price(self, position_id, price: float) -> None:
        """Track the highest price seen, for trailing stops. Optional."""
        return None


class StrategyStore(ABC):

    @abstractmethod
    async def get_strategy(self, strategy_id) -> Optional[Strategy]:
        pass

    @abstractmethod
    async def get_active_strategies(self, exchange: Optional[str] = None) -> List[Strategy]:
        pass


_POSITION_COLUMNS = (
    "id", "user_id", "exchange", "pair", "status", "entry_price", "entry_quantity",
    "entry_value_usdt", "entry_time", "entry_fee", "strategy_id", "closing_at", "peak_price",
    "exit_price", "exit_fee", "exit_reason", "exit_order_id", "exit_pnl_usdt", "exit_pnl_percent",
    "exit_time",
)


def _row_to_position(row: sqlite3.Row) -> Position:
    data = {name: row[name] for name in _POSITION_COLUMNS}
    data["status"] = PositionStatus(data["status"])
    return Position(**data)


def _row_to_strategy(row: sqlite3.Row) -> Strategy:
    return Strategy(
        id=row["id"],
        user_id=row["user_id"],
        exchange=row["exchange"],
        exit_rules=ExitRules.from_dict(json.loads(row["exit_rules"] or "{}")),
        is_active=bool(row["is_active"]),
        name=row["name"] or "",
    )


class SqliteTradingStore(PositionStore, StrategyStore):
    """
    SQLite-based position and strategy storage.

    Queries run in a worker thread so the event loop is never blocked
    and callers can bound them with asyncio timeouts.
    """

    def __init__(self, db_path: str = "trading.db"):
        self.db_path = db_path
        self._init_database()
        logger.info(f"SqliteTradingStore initialized: {db_path}")

    def _init_database(self):
        """Create tables if they don't exist"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS strategies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    exchange TEXT NOT NULL,
                    name TEXT,
                    exit_rules TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    exchange TEXT NOT NULL,
                    pair TEXT NOT NULL,
                    strategy_id INTEGER,
                    status TEXT NOT NULL DEFAULT 'OPEN',
                    entry_price REAL NOT NULL,
                    entry_quantity REAL NOT NULL,
                    entry_value_usdt REAL NOT NULL,
                    entry_fee REAL NOT NULL DEFAULT 0,
                    entry_time REAL NOT NULL,
                    closing_at REAL,
                    peak_price REAL,
                    exit_price REAL,
                    exit_quantity REAL,
                    exit_fee REAL,
                    exit_reason TEXT,
                    exit_order_id TEXT,
                    exit_pnl_usdt REAL,
                    exit_pnl_percent REAL,
                    exit_time REAL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_user_exchange ON positions(user_id, exchange)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_strategies_exchange ON strategies(exchange)")

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # SEEDING (used by the entry side and tests)
    # -------------------------------------------------------------------------

    def create_strategy(
        self,
        user_id: str,
        exchange: str,
        exit_rules: ExitRules,
        name: str = "",
        is_active: bool = True,
    ) -> Strategy:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO strategies (user_id, exchange, name, exit_rules, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user_id, exchange.lower(), name, json.dumps(exit_rules.to_dict()), 1 if is_active else 0, time.time()),
            )
            conn.commit()
            strategy_id = cursor.lastrowid
        return Strategy(id=strategy_id, user_id=user_id, exchange=exchange.lower(),
                        exit_rules=exit_rules, is_active=is_active, name=name)

    def create_position(
        self,
        user_id: str,
        exchange: str,
        pair: str,
        entry_price: float,
        entry_quantity: float,
        entry_fee: float = 0.0,
        strategy_id=None,
        entry_time: Optional[float] = None,
        status: PositionStatus = PositionStatus.OPEN,
        closing_at: Optional[float] = None,
    ) -> Position:
        entry_time = time.time() if entry_time is None else entry_time
        entry_value = entry_price * entry_quantity
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO positions (
                    user_id, exchange, pair, strategy_id, status,
                    entry_price, entry_quantity, entry_value_usdt, entry_fee, entry_time,
                    closing_at, peak_price
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id, exchange.lower(), pair, strategy_id, status.value,
                entry_price, entry_quantity, entry_value, entry_fee, entry_time,
                closing_at, entry_price,
            ))
            conn.commit()
            position_id = cursor.lastrowid
        return self._get_position_sync(position_id)

    # -------------------------------------------------------------------------
    # POSITION STORE
    # -------------------------------------------------------------------------

    def _mark_closing_sync(self, position_id) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE positions SET status = ?, closing_at = ? WHERE id = ? AND status = ?",
                (PositionStatus.CLOSING.value, time.time(), position_id, PositionStatus.OPEN.value),
            )
            conn.commit()
        if cursor.rowcount != 1:
            raise PositionError(f"Position {position_id} is not OPEN - cannot mark CLOSING")

    async def mark_closing(self, position_id) -> None:
        await asyncio.to_thread(self._mark_closing_sync, position_id)

    def _close_position_sync(self, position_id, details: CloseDetails) -> Position:
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE positions SET
                    status = ?, exit_price = ?, exit_quantity = ?, exit_fee = ?, exit_reason = ?,
                    exit_order_id = ?, exit_pnl_usdt = ?, exit_pnl_percent = ?, exit_time = ?
                WHERE id = ? AND status = ?
            """, (
                PositionStatus.CLOSED.value, details.exit_price, details.exit_quantity, details.exit_fee,
                details.exit_reason, details.exit_order_id, details.exit_pnl_usdt, details.exit_pnl_percent,
                time.time(), position_id, PositionStatus.CLOSING.value,
            ))
            conn.commit()
        if cursor.rowcount != 1:
            raise PositionError(f"Position {position_id} is not CLOSING - cannot close")
        return self._get_position_sync(position_id)

    async def close_position(self, position_id, details: CloseDetails) -> Position:
        return await asyncio.to_thread(self._close_position_sync, position_id, details)

    def _query_positions(self, query: str, params: tuple) -> List[Position]:
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_position(row) for row in rows]

    async def get_open_positions(self, user_id: str, exchange: str) -> List[Position]:
        return await asyncio.to_thread(
            self._query_positions,
            "SELECT * FROM positions WHERE user_id = ? AND exchange = ? AND status = ? ORDER BY entry_time",
            (user_id, exchange.lower(), PositionStatus.OPEN.value),
        )

    async def get_active_positions(self, exchange: str) -> List[Position]:
        return await asyncio.to_thread(
            self._query_positions,
            "SELECT * FROM positions WHERE exchange = ? AND status IN (?, ?) ORDER BY entry_time",
            (exchange.lower(), PositionStatus.OPEN.value, PositionStatus.CLOSING.value),
        )

    def _get_position_sync(self, position_id) -> Optional[Position]:
        positions = self._query_positions("SELECT * FROM positions WHERE id = ?", (position_id,))
        return positions[0] if positions else None

    async def get_position(self, position_id) -> Optional[Position]:
        return await asyncio.to_thread(self._get_position_sync, position_id)

    def _update_peak_sync(self, position_id, price: float) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE positions SET peak_price = ? WHERE id = ? AND (peak_price IS NULL OR peak_price < ?)",
                (price, position_id, price),
            )
            conn.commit()

    async def update_peak_price(self, position_id, price: float) -> None:
        await asyncio.to_thread(self._update_peak_sync, position_id, price)

    # -------------------------------------------------------------------------
    # STRATEGY STORE
    # -------------------------------------------------------------------------

    def _query_strategies(self, query: str, params: tuple) -> List[Strategy]:
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_strategy(row) for row in rows]

    async def get_strategy(self, strategy_id) -> Optional[Strategy]:
        strategies = await asyncio.to_thread(
            self._query_strategies, "SELECT * FROM strategies WHERE id = ?", (strategy_id,)
        )
        return strategies[0] if strategies else None

    async def get_active_strategies(self, exchange: Optional[str] = None) -> List[Strategy]:
        if exchange:
            return await asyncio.to_thread(
                self._query_strategies,
                "SELECT * FROM strategies WHERE is_active = 1 AND exchange = ? ORDER BY id",
                (exchange.lower(),),
            )
        return await asyncio.to_thread(
            self._query_strategies, "SELECT * FROM strategies WHERE is_active = 1 ORDER BY id", ()
        )
