"""
Service availability endpoints
"""

import logging
import re
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..exceptions import NotFound, ValidationFailed
from ..models import User
from ..services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/services", tags=["Services"])

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@router.get("/{service_id}/availability")
async def get_service_availability(
    service_id: uuid.UUID,
    date_: Optional[date] = Query(None, alias="date"),
    month: Optional[str] = Query(None),
    timezone: str = Query("UTC"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Open slots for one day (``?date=YYYY-MM-DD``) or a per-day summary for a
    month (``?month=YYYY-MM``). Times are rendered in ``timezone``.
    """
    if not date_ and not month:
        raise ValidationFailed("Either date or month is required")
    if month and not MONTH_PATTERN.match(month):
        raise ValidationFailed("month must be YYYY-MM")

    service = AvailabilityService(db)
    try:
        if date_:
            return {"date": date_.isoformat(), "timezone": timezone, **service.get_day_availability(service_id, date_, timezone)}
        return {"month": month, "timezone": timezone, **service.get_month_availability(service_id, month, timezone)}
    except LookupError as e:
        raise NotFound(str(e)) from e
