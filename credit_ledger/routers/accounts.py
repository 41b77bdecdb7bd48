from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from ..config import settings
from ..db import get_db
from ..exceptions import AuthenticationError, handle_ledger_exceptions
from ..schemas import AccountCreate, AccountLogin, AccountOut, Token
from ..auth import create_access_token
from ..services.accounts import create_account
from ..services.ledger import find_account_by_email

router = APIRouter()


@router.post('/signup', response_model=AccountOut)
@handle_ledger_exceptions
def signup(payload: AccountCreate, db: Session = Depends(get_db)):
    return create_account(db, payload.email, account_id=payload.account_id)


@router.post('/login', response_model=Token)
@handle_ledger_exceptions
def login(payload: AccountLogin, db: Session = Depends(get_db)):
    # Not real authentication: anyone who knows an email gets its token.
    # Production deployments leave this off and mint tokens in the identity provider.
    if not settings.allow_email_login:
        raise HTTPException(status_code=403, detail="Email login is disabled")
    account = find_account_by_email(db, payload.email)
    if not account:
        raise AuthenticationError("Invalid credentials")
    return Token(access_token=create_access_token(str(account.id)))
