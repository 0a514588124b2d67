"""Transfer execution and inspection endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from errors import CredentialsError, PreflightError, TransferFailedError, TransferInProgressError
from models import Opportunity, TransferCredentials, TransferStatus
from .deps import verify_api_key, get_engine, get_ledger, get_credentials

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transfers", tags=["transfers"], dependencies=[Depends(verify_api_key)])


@router.get("/status")
async def get_transfer_status():
    """Engine status: in-flight flag, counts, realized profit"""
    return get_engine().get_status()


@router.get("/active")
async def get_active_transfers():
    return {"transfers": [t.to_dict() for t in get_engine().get_active_transfers()]}


@router.get("/history")
async def get_transfer_history(limit: int = 50, status: Optional[str] = None, source: str = "memory"):
    """Finished transfers, newest first. source=ledger reads the durable record."""
    if source == "ledger":
        ledger = get_ledger()
        if ledger is None:
            return JSONResponse({"error": "Transfer ledger not configured"}, status_code=404)
        try:
            status_filter = TransferStatus(status.upper()) if status else None
        except ValueError:
            return JSONResponse({"error": f"Unknown status: {status}"}, status_code=400)
        transfers = ledger.get_transfers(status=status_filter, limit=limit)
    else:
        transfers = get_engine().get_transfer_history(limit)
        if status:
            transfers = [t for t in transfers if t.status.value == status.upper()]
    return {"transfers": [t.to_dict() for t in transfers], "count": len(transfers)}


@router.get("/{transfer_id}")
async def get_transfer(transfer_id: str):
    transfer = get_engine().get_transfer(transfer_id)
    if transfer is None:
        return JSONResponse({"error": f"Transfer not found: {transfer_id}"}, status_code=404)
    return transfer.to_dict()


@router.post("/execute")
async def execute_transfer(request: dict):
    """
    Execute an opportunity.

    Body: {"user_id", "opportunity": {...}, "deposit_address", "deposit_tag"?, "network"?}
    Blocks until the transfer completes or fails.
    """
    engine = get_engine()
    store = get_credentials()

    try:
        opportunity = Opportunity.from_dict(request["opportunity"])
        user_id = request["user_id"]
        deposit_address = request["deposit_address"]
    except (KeyError, TypeError, ValueError) as e:
        return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)

    if engine.is_transfer_in_progress():
        return JSONResponse({"error": "Transfer already in progress", "retryable": True}, status_code=409)

    try:
        credentials = TransferCredentials(
            source=await store.get_credentials(user_id, opportunity.source_exchange),
            destination=await store.get_credentials(user_id, opportunity.dest_exchange),
            deposit_address=deposit_address,
            deposit_tag=request.get("deposit_tag"),
            network=request.get("network"),
        )
        result = await engine.execute_transfer(opportunity, credentials)
    except TransferInProgressError as e:
        return JSONResponse({"error": str(e), "retryable": True}, status_code=409)
    except (PreflightError, CredentialsError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except TransferFailedError as e:
        logger.warning(f"[API] Transfer failed at {e.step}: {e.message}")
        return JSONResponse({
            "error": e.message,
            "step": e.step,
            "transfer": e.transfer.to_dict() if e.transfer else None,
        }, status_code=502)

    return result.to_dict()
