#!/usr/bin/env python3
"""
API server for the transfer arbitrage execution core.

Wires the engine, position exit monitor, reconciliation sweep and worker
together, runs the background loops, and exposes operator endpoints.
"""

import asyncio
import logging
import os
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from alerts import AlertNotifier
from config import AppConfig, EXCHANGE_CRYPTO_SUPPORT
from deposit_monitor import DepositMonitor
from exchange_adapter import create_registry
from logging_setup import setup_logging
from position_monitor import PositionExitMonitor
from reconciliation import ReconciliationSweep
from retry import connection_monitor
from routes import transfers_router, positions_router, reconciliation_router
from routes.deps import set_state, _state
from stores import EnvCredentialStore, SqliteTradingStore
from transfer_engine import TransferExecutionEngine
from transfer_ledger import TransferLedger
from worker import PositionMonitorWorker

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Transfer Arbitrage Execution API",
    description="Cross-exchange transfer execution, position exits and reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(transfers_router)
app.include_router(positions_router)
app.include_router(reconciliation_router)

# Background tasks
background_tasks: list[asyncio.Task] = []


def configured_exchanges() -> list[str]:
    names = os.getenv("EXCHANGES")
    if names:
        return [n.strip().lower() for n in names.split(",") if n.strip()]
    return sorted(EXCHANGE_CRYPTO_SUPPORT)


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup():
    """Build the core components and start background loops"""
    config = AppConfig.from_env()
    setup_logging(config.log_dir)

    registry = create_registry(configured_exchanges())
    alerts = AlertNotifier(config.alerts)
    ledger = TransferLedger(config.db_path)
    store = SqliteTradingStore(config.db_path)
    credentials = EnvCredentialStore()

    engine = TransferExecutionEngine(
        registry,
        config=config.engine,
        ledger=ledger,
        deposit_monitor=DepositMonitor.from_config(config.engine),
        alerts=alerts,
    )
    position_monitor = PositionExitMonitor(registry, store, store, config=config.positions, alerts=alerts)
    sweep = ReconciliationSweep(store, store, config=config.reconciliation, ledger=ledger, alerts=alerts)
    worker = PositionMonitorWorker(position_monitor, store, credentials)

    set_state("engine", engine)
    set_state("ledger", ledger)
    set_state("position_monitor", position_monitor)
    set_state("sweep", sweep)
    set_state("worker", worker)
    set_state("credentials", credentials)

    background_tasks.append(asyncio.create_task(sweep.start()))
    if os.getenv("POSITION_MONITOR_ENABLED", "true").lower() == "true":
        background_tasks.append(asyncio.create_task(worker.start()))

    logger.info(f"[Server] Started ({len(registry.exchanges)} exchanges, alerts={alerts.channels or 'log only'})")


@app.on_event("shutdown")
async def shutdown():
    """Clean up on shutdown"""
    if _state["sweep"]:
        _state["sweep"].stop()
    if _state["worker"]:
        _state["worker"].stop()

    for task in background_tasks:
        task.cancel()
    background_tasks.clear()

    logger.info("[Server] Shutdown complete")


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/")
async def root():
    return {"status": "ok", "service": "transfer-arb", "timestamp": int(time.time())}


@app.get("/health")
async def health():
    """Exchange connection health and background loop state"""
    connections = connection_monitor.get_status()
    unhealthy = [name for name, status in connections.items() if not status["is_healthy"]]

    engine = _state["engine"]
    worker = _state["worker"]
    sweep = _state["sweep"]

    if engine is None:
        status = "unhealthy"
    elif unhealthy:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "transfer_in_progress": engine.is_transfer_in_progress() if engine else None,
        "connections": connections,
        "worker": worker.get_status() if worker else None,
        "reconciliation": {
            "runs": sweep.runs,
            "last_run": sweep.last_run,
            "mismatches": len(sweep.last_mismatches),
        } if sweep else None,
    }


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    uvicorn.run(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
