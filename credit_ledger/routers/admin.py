import hmac
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..exceptions import handle_ledger_exceptions
from ..schemas import CreditAdjustRequest, CreditAdjustmentOut, ReplayResponse, StuckEventOut
from ..services.adjustments import adjust_credits
from ..services.stripe_events import StripeEventProcessor, find_stuck_events

logger = logging.getLogger(__name__)


def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> str:
    if not settings.admin_api_key:
        raise HTTPException(status_code=403, detail="Admin routes are disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("Rejected admin request with a missing or wrong key")
        raise HTTPException(status_code=403, detail="Forbidden")
    return "admin"


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post('/credits/adjust', response_model=CreditAdjustmentOut)
@handle_ledger_exceptions
def adjust(payload: CreditAdjustRequest, db: Session = Depends(get_db)):
    result = adjust_credits(
        db,
        payload.account_id,
        payload.operation,
        payload.credits,
        reason=payload.reason,
        actor=payload.actor,
    )
    return CreditAdjustmentOut(
        adjustment_id=result.adjustment_id,
        account_id=result.account_id,
        operation=result.operation,
        credits=result.credits,
        balance_after=result.balance_after,
        batch_id=result.batch_id,
    )


@router.post('/stripe/events/{event_id}/replay', response_model=ReplayResponse)
@handle_ledger_exceptions
def replay(event_id: str, db: Session = Depends(get_db)):
    success, message = StripeEventProcessor(db).replay_event(event_id)
    if message == "Event not found":
        raise HTTPException(status_code=404, detail=message)
    logger.info(f"Manual replay of event {event_id}: {message}")
    return ReplayResponse(event_id=event_id, success=success, message=message)


@router.get('/stripe/events/stuck', response_model=List[StuckEventOut])
@handle_ledger_exceptions
def stuck_events(older_than_minutes: Optional[int] = None, limit: int = 50, db: Session = Depends(get_db)):
    if older_than_minutes is not None and older_than_minutes <= 0:
        raise HTTPException(status_code=400, detail="older_than_minutes must be positive")
    return [
        StuckEventOut.model_validate(event_log)
        for event_log in find_stuck_events(db, older_than_minutes, limit=min(max(limit, 1), 200))
    ]
