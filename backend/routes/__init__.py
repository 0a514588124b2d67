"""
Route modules for the Transfer Arbitrage API.

This package organizes API endpoints into logical groups:
- transfers: Transfer execution, status and history
- positions: Manual position close and unrealized P&L
- reconciliation: Sweep results and on-demand sweeps
"""

from .transfers import router as transfers_router
from .positions import router as positions_router
from .reconciliation import router as reconciliation_router

__all__ = [
    "transfers_router",
    "positions_router",
    "reconciliation_router",
]
