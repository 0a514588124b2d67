"""Manual position actions."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from errors import CredentialsError, PositionCloseError, PositionError
from .deps import verify_api_key, get_position_monitor, get_credentials

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(verify_api_key)])


@router.get("/{position_id}/pnl")
async def get_position_pnl(position_id: int, user_id: str, exchange: str):
    """Unrealized P&L at the current market price"""
    try:
        creds = await get_credentials().get_credentials(user_id, exchange)
        return await get_position_monitor().get_current_pnl(position_id, exchange, creds)
    except (PositionError, CredentialsError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)


@router.post("/{position_id}/close")
async def close_position(position_id: int, request: dict):
    """Body: {"user_id", "exchange"}"""
    user_id = request.get("user_id")
    exchange = request.get("exchange")
    if not user_id or not exchange:
        return JSONResponse({"error": "user_id and exchange are required"}, status_code=400)

    try:
        creds = await get_credentials().get_credentials(user_id, exchange)
        position = await get_position_monitor().manual_close_position(position_id, user_id, exchange, creds)
    except (PositionError, CredentialsError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except PositionCloseError as e:
        return JSONResponse({
            "error": str(e),
            "sell_executed": e.sell_executed,
            "exit_order_id": e.exit_order_id,
        }, status_code=502)

    return {"status": "closed", "position": position.to_dict()}
