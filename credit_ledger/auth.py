from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .exceptions import InvalidTokenError, TokenExpiredError, to_http_exception

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(sub: str, expires_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": now + timedelta(minutes=expires_minutes or settings.access_token_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(str(e))
    sub = payload.get("sub")
    if not sub:
        raise InvalidTokenError("missing subject")
    return sub


def get_current_account_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None:
        raise to_http_exception(InvalidTokenError("missing bearer token"))
    try:
        return decode_access_token(credentials.credentials)
    except (TokenExpiredError, InvalidTokenError) as e:
        raise to_http_exception(e)
