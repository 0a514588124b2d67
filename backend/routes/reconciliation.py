"""Reconciliation sweep results."""

from fastapi import APIRouter, Depends

from .deps import verify_api_key, get_sweep

router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"], dependencies=[Depends(verify_api_key)])


@router.get("/mismatches")
async def get_mismatches():
    """Mismatches found by the most recent sweep"""
    sweep = get_sweep()
    return {
        "last_run": sweep.last_run,
        "runs": sweep.runs,
        "mismatches": [m.to_dict() for m in sweep.last_mismatches],
    }


@router.post("/run")
async def run_sweep():
    mismatches = await get_sweep().run_once()
    return {"mismatches": [m.to_dict() for m in mismatches], "count": len(mismatches)}
