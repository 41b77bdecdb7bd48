from typing import Optional

from fastapi import APIRouter, Depends, Header, Response, status
from sqlalchemy.orm import Session
from ..auth import get_current_account_id
from ..db import get_db, utcnow
from ..exceptions import handle_ledger_exceptions
from ..schemas import CreditBalance, DeductRequest, DeductResponse, ExpirationInfoOut, UsageRecordOut, UsageSummary
from ..services.deduction import deduct
from ..services.expiration import get_expiration_info
from ..services.ledger import get_account, get_balance
from ..services.usage import recent_usage, usage_since

router = APIRouter()


@router.get('/balance', response_model=CreditBalance)
@handle_ledger_exceptions
def balance(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)):
    return CreditBalance(credits=get_balance(db, account_id))


@router.post('/deduct', response_model=DeductResponse)
@handle_ledger_exceptions
def deduct_credits(
    payload: DeductRequest,
    account_id: str = Depends(get_current_account_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
):
    result = deduct(
        db,
        account_id,
        payload.credits,
        tool=payload.tool,
        description=payload.description,
        idempotency_key=idempotency_key,
    )
    return DeductResponse(
        success=result.success,
        credits_used=result.credits_used,
        previous_balance=result.previous_balance,
        remaining_balance=result.remaining_balance,
        replayed=result.replayed,
    )


@router.get('/expiration', response_model=Optional[ExpirationInfoOut])
@handle_ledger_exceptions
def expiration(account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)):
    info = get_expiration_info(db, account_id)
    if info is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return ExpirationInfoOut(
        expires_at=info.expires_at,
        days_until_expiry=info.days_until_expiry,
        is_expiring_soon=info.is_expiring_soon,
        is_expired=info.is_expired,
    )


@router.get('/usage', response_model=UsageSummary)
@handle_ledger_exceptions
def usage(limit: int = 50, account_id: str = Depends(get_current_account_id), db: Session = Depends(get_db)):
    account = get_account(db, account_id)
    month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return UsageSummary(
        used_this_month=usage_since(db, account.id, month_start),
        records=[
            UsageRecordOut.model_validate(record)
            for record in recent_usage(db, account.id, limit=min(max(limit, 1), 200))
        ],
    )
