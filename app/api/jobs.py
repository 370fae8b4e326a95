"""
Job Routes

Lets an external scheduler trigger the expired hold sweep over HTTP.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import HANDLED_ERRORS, get_clock, get_notifier, to_http_error
from app.config import settings
from app.db.session import get_db_session
from app.models.schemas import SweepResult
from app.services.expiry_sweeper import ExpirySweeper
from app.services.notifier import Notifier
from app.services.reservation import Clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def verify_sweep_token(x_sweep_token: str | None = Header(default=None)) -> None:
    """Reject callers without the shared secret, when one is configured."""
    expected = settings.sweep_secret_token
    if not expected:
        return
    if not x_sweep_token or not secrets.compare_digest(x_sweep_token, expected):
        logger.warning("Rejected sweep request with invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid sweep token",
        )


@router.post(
    "/expire-holds",
    response_model=SweepResult,
    dependencies=[Depends(verify_sweep_token)],
)
async def expire_holds(
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> SweepResult:
    """Run one expiry sweep and report what it did."""
    try:
        return await ExpirySweeper(db, notifier, clock).run()
    except HANDLED_ERRORS as e:
        raise to_http_error(e) from e
