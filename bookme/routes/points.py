"""
Points ledger endpoints (read-only)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..services.points_service import POINTS_PER_DOLLAR, PointsService, points_to_usd

router = APIRouter(prefix="/api/points", tags=["Points"])


@router.get("/balance")
async def get_points_balance(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Balance, reserved and spendable points for the current user"""
    info = PointsService(db).get_points_info(current_user.id)
    return {
        **info,
        "available_usd": str(points_to_usd(info["available"])),
        "points_per_dollar": POINTS_PER_DOLLAR,
    }


@router.get("/history")
async def get_points_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    transactions = PointsService(db).get_transaction_history(current_user.id, limit, offset)
    return {"transactions": transactions, "limit": limit, "offset": offset}
