"""
Shared dependencies for route modules.

This module provides access to global state and shared utilities.
"""

import logging
import os
import secrets
import sys

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

# =============================================================================
# SECURITY: API Key Authentication
# =============================================================================

ENV = os.getenv("ENV", "development").lower()
API_KEY = os.getenv("API_KEY")

if not API_KEY:
    if ENV == "production":
        logger.critical("[Security] FATAL: API_KEY environment variable not set.")
        sys.exit(1)
    else:
        API_KEY = secrets.token_urlsafe(32)
        logger.warning(f"[Security] Generated temporary key: {API_KEY}")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints"""
    if not api_key or not secrets.compare_digest(api_key, API_KEY):
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Include X-API-Key header."
        )
    return api_key


# =============================================================================
# GLOBAL STATE ACCESSORS
# =============================================================================

# These will be set by server.py at startup
_state = {
    "engine": None,
    "ledger": None,
    "position_monitor": None,
    "sweep": None,
    "worker": None,
    "credentials": None,
}


def set_state(key: str, value):
    """Set a global state value (called from server.py)"""
    _state[key] = value


def _require(key: str):
    value = _state[key]
    if value is None:
        raise HTTPException(status_code=503, detail=f"{key} not initialized")
    return value


def get_engine():
    return _require("engine")


def get_ledger():
    return _state["ledger"]


def get_position_monitor():
    return _require("position_monitor")


def get_sweep():
    return _require("sweep")


def get_worker():
    return _state["worker"]


def get_credentials():
    return _require("credentials")
