"""
Availability Routes
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import HANDLED_ERRORS, get_clock, to_http_error
from app.db.session import get_db_session
from app.models.schemas import AvailabilityResponse
from app.services.availability import AvailabilityService
from app.services.reservation import Clock

router = APIRouter(tags=["availability"])


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    tenant_id: str = Query(...),
    professional_id: str = Query(...),
    service_id: str = Query(...),
    day: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> AvailabilityResponse:
    """
    Free start times of a professional for one service on one day.

    Expired holds that were not swept yet count as free.
    """
    try:
        return await AvailabilityService(db).get_availability(
            tenant_id, professional_id, service_id, day, clock()
        )
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e
