"""
Transfer Ledger - SQLite-based durable record of every transfer attempt.

The execution engine checkpoints the full Transfer (steps included) before
each step transition, so a crash mid-transfer still leaves the forensic
record needed for manual reconciliation.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional, List

from errors import LedgerError
from models import Transfer, TransferStatus, StepStatus


logger = logging.getLogger("transfer_ledger")


class TransferLedger:
    """
    SQLite-backed transfer store.

    One row per transfer id; every checkpoint is an upsert of the whole record.
    """

    def __init__(self, db_path: str = "transfers.db"):
        self.db_path = db_path
        self._init_database()
        logger.info(f"TransferLedger initialized: {db_path}")

    def _init_database(self):
        """Create tables if they don't exist"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS transfers (
                    id TEXT PRIMARY KEY,
                    asset TEXT NOT NULL,
                    source_exchange TEXT NOT NULL,
                    dest_exchange TEXT NOT NULL,
                    usdt_to_spend REAL NOT NULL,
                    status TEXT NOT NULL,
                    current_step TEXT,
                    funds_left_source INTEGER NOT NULL DEFAULT 0,
                    start_time REAL NOT NULL,
                    end_time REAL,
                    actual_profit REAL,
                    record TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transfers_start_time ON transfers(start_time)")

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
    # WRITES
    # -------------------------------------------------------------------------

    def save_transfer(self, transfer: Transfer) -> None:
        """
        Upsert the full transfer record.

        Raises:
            LedgerError: the checkpoint could not be written
        """
        opp = transfer.opportunity
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO transfers (
                        id, asset, source_exchange, dest_exchange, usdt_to_spend,
                        status, current_step, funds_left_source, start_time, end_time,
                        actual_profit, record, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        current_step = excluded.current_step,
                        funds_left_source = excluded.funds_left_source,
                        end_time = excluded.end_time,
                        actual_profit = excluded.actual_profit,
                        record = excluded.record,
                        updated_at = excluded.updated_at
                """, (
                    transfer.id, opp.asset, opp.source_exchange, opp.dest_exchange, opp.usdt_to_spend,
                    transfer.status.value, _current_step(transfer), 1 if transfer.funds_left_source else 0,
                    transfer.start_time, transfer.end_time,
                    transfer.actual_profit, json.dumps(transfer.to_dict()), time.time(),
                ))
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to save transfer {transfer.id}: {e}")
            raise LedgerError(f"Failed to save transfer {transfer.id}: {e}") from e

        logger.debug(f"Checkpoint {transfer.id} | {transfer.status.value} | step={_current_step(transfer)}")

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT record FROM transfers WHERE id = ?", (transfer_id,)).fetchone()
        return Transfer.from_dict(json.loads(row["record"])) if row else None

    def get_transfers(self, status: Optional[TransferStatus] = None, limit: int = 100) -> List[Transfer]:
        """Transfers newest first, optionally filtered by status."""
        query = "SELECT record FROM transfers WHERE 1=1"
        params: list = []

        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY start_time DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Transfer.from_dict(json.loads(row["record"])) for row in rows]

    def get_incomplete_transfers(self, older_than_sec: float = 0.0, now: Optional[float] = None) -> List[Transfer]:
        """Non-terminal transfers started more than ``older_than_sec`` ago."""
        now = time.time() if now is None else now
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT record FROM transfers WHERE status IN (?, ?) AND start_time <= ? ORDER BY start_time",
                (TransferStatus.INITIATED.value, TransferStatus.IN_TRANSIT.value, now - older_than_sec),
            ).fetchall()
        return [Transfer.from_dict(json.loads(row["record"])) for row in rows]

    def get_failed_in_flight(self, since: Optional[float] = None) -> List[Transfer]:
        """FAILED transfers whose funds had already left the source exchange."""
        query = "SELECT record FROM transfers WHERE status = ? AND funds_left_source = 1"
        params: list = [TransferStatus.FAILED.value]

        if since:
            query += " AND start_time >= ?"
            params.append(since)

        query += " ORDER BY start_time DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Transfer.from_dict(json.loads(row["record"])) for row in rows]

    def get_stats(self) -> dict:
        """Counts per status and realized profit of completed transfers."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM transfers GROUP BY status").fetchall()
            profit = conn.execute(
                "SELECT COALESCE(SUM(actual_profit), 0) AS total FROM transfers WHERE status = ?",
                (TransferStatus.COMPLETED.value,),
            ).fetchone()
        counts = {row["status"]: row["n"] for row in rows}
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "total_profit": round(profit["total"], 2),
        }


def _current_step(transfer: Transfer) -> Optional[str]:
    """The step in flight or failed, else the last completed one."""
    failed = transfer.failed_step
    if failed:
        return failed
    last = None
    for name, step in transfer.steps.items():
        if step.status == StepStatus.COMPLETED:
            last = name
    return last
